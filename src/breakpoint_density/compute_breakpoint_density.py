#!/usr/bin/env python
import os
import re
import sys
import argparse
import logging
from typing import List, Text, Optional, Mapping, Sequence, Dict, Collection

import pandas

from breakpoint_density import common, genomics_io, cohort
from breakpoint_density.break_density import BinningContext, Default as DensityDefault
from breakpoint_density.common import ConfigurationError, DataShapeError, ErrorAction


class Keys:
    contig = genomics_io.Keys.contig
    bin_index = genomics_io.Keys.bin_index
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end
    callable_fraction = genomics_io.Keys.callable_fraction
    count = genomics_io.Keys.count
    mode = "mode"
    unit = "unit"
    reason = "reason"
    individual = "individual"
    group = "group"
    both = "both"


class Default:
    bin_size = DensityDefault.bin_size
    perc_cutoff = DensityDefault.perc_cutoff
    histology_column = genomics_io.Default.histology_column
    excluded_strategies = cohort.Default.excluded_strategies
    mode = Keys.both
    per_sample_tables = False
    missing_samples = "raise"
    n_jobs = cohort.Default.n_jobs
    log_level = "INFO"
    log_format = '%(asctime)s - %(message)s'
    bins_file = "genome_bins.tsv.gz"
    samples_dir = "samples"
    groups_dir = "groups"
    skipped_file = "skipped_units.tsv"
    sample_densities_suffix = "_sample_breaks_densities.tsv.gz"
    sample_density_suffix = "_breaks_density.tsv.gz"
    group_densities_suffix = "_breaks_densities.tsv.gz"


def safe_file_name(label: str) -> str:
    """ Replace characters that are awkward in file names (whitespace, path separators, ...) with underscores """
    return re.sub(r"[^A-Za-z0-9._-]+", "_", label.strip()) or "_"


def _unique_file_names(labels: Collection[str]) -> Dict[str, str]:
    """ Map each label to a safe file name, adding a numeric suffix where two labels would collide """
    file_names = {}
    used = set()
    for label in labels:
        base = safe_file_name(label)
        file_name = base
        suffix = 2
        while file_name in used:
            file_name = f"{base}_{suffix}"
            suffix += 1
        used.add(file_name)
        file_names[label] = file_name
    return file_names


def load_datasets(
        dataset_files: Mapping[str, Optional[Text]],
        column_candidates: Mapping[str, Sequence[str]] = genomics_io.Default.breakpoint_column_candidates
) -> Dict[str, pandas.DataFrame]:
    """
    Load every breakpoint table that was supplied. Tables that cannot be parsed into breakpoints are logged and dropped.
    Args:
        dataset_files: Mapping[str, Optional[Text]]
            dataset name -> path to breakpoint table, or None if not supplied
        column_candidates: Mapping[str, Sequence[str]]
            Internal key -> candidate column names, in priority order
    Returns:
        datasets: Dict[str, pandas.DataFrame]
            dataset name -> breakpoint table
    """
    dataset_files = {name: file for name, file in dataset_files.items() if file is not None}
    if not dataset_files:
        raise ConfigurationError("At least one breakpoint dataset must be supplied")
    datasets = {}
    for dataset_name, dataset_file in dataset_files.items():
        try:
            datasets[dataset_name] = genomics_io.load_breakpoints(dataset_file, column_candidates=column_candidates)
        except DataShapeError as data_shape_error:
            logging.error(f"Dropping dataset {dataset_name}: {data_shape_error}")
    return cohort.check_datasets(datasets)


def write_individual_densities(
        output_dir: Text,
        densities: Mapping[str, pandas.DataFrame],
        per_sample_tables: bool = Default.per_sample_tables
) -> List[str]:
    """
    Write one table per dataset (rows = bins, one column per sample). Optionally also write one table per sample and
    dataset into the samples/ subdirectory.
    """
    written = []
    bin_columns = [Keys.contig, Keys.bin_index, Keys.begin, Keys.end]
    for dataset_name, dataset_densities in densities.items():
        output_file = os.path.join(output_dir, f"{dataset_name}{Default.sample_densities_suffix}")
        genomics_io.pandas_to_tsv(output_file, dataset_densities)
        written.append(output_file)
    if per_sample_tables:
        samples_dir = os.path.join(output_dir, Default.samples_dir)
        os.makedirs(samples_dir, exist_ok=True)
        for dataset_name, dataset_densities in densities.items():
            sample_ids = [column for column in dataset_densities.columns if column not in bin_columns]
            file_names = _unique_file_names(sample_ids)
            for sample_id in sample_ids:
                output_file = os.path.join(
                    samples_dir, f"{file_names[sample_id]}_{dataset_name}{Default.sample_density_suffix}"
                )
                sample_density = dataset_densities[bin_columns].assign(**{Keys.count: dataset_densities[sample_id]})
                genomics_io.pandas_to_tsv(output_file, sample_density)
                written.append(output_file)
    return written


def write_group_densities(output_dir: Text, densities: Mapping[str, Mapping[str, pandas.DataFrame]]) -> List[str]:
    """
    Write one table per group into the groups/ subdirectory: bin coordinates, callable fraction, and one count column
    per dataset.
    """
    written = []
    groups_dir = os.path.join(output_dir, Default.groups_dir)
    os.makedirs(groups_dir, exist_ok=True)
    file_names = _unique_file_names(list(densities))
    for group, group_densities in densities.items():
        first_table = next(iter(group_densities.values()))
        group_table = first_table[[Keys.contig, Keys.bin_index, Keys.begin, Keys.end, Keys.callable_fraction]].assign(
            **{dataset_name: table[Keys.count] for dataset_name, table in group_densities.items()}
        )
        output_file = os.path.join(groups_dir, f"{file_names[group]}{Default.group_densities_suffix}")
        genomics_io.pandas_to_tsv(output_file, group_table)
        written.append(output_file)
    return written


def write_skipped_units(output_dir: Text, skipped: Mapping[str, Mapping[str, str]]) -> Optional[str]:
    """ Write (mode, unit, reason) for every skipped sample or group. Nothing is written if no unit was skipped. """
    rows = [(mode, unit, reason) for mode, mode_skipped in skipped.items() for unit, reason in mode_skipped.items()]
    if not rows:
        return None
    output_file = os.path.join(output_dir, Default.skipped_file)
    pandas.DataFrame(rows, columns=[Keys.mode, Keys.unit, Keys.reason]).to_csv(output_file, sep='\t', index=False)
    logging.warning(f"Skipped {len(rows)} unit(s), see {output_file}")
    return output_file


def compute_breakpoint_density(
        chrom_sizes_file: Text,
        output_dir: Text,
        dataset_files: Mapping[str, Optional[Text]],
        uncallable_file: Optional[Text] = None,
        metadata_file: Optional[Text] = None,
        bin_size: int = Default.bin_size,
        perc_cutoff: float = Default.perc_cutoff,
        histology_column: str = Default.histology_column,
        metadata_sample_column: Optional[str] = None,
        excluded_strategies: Collection[str] = Default.excluded_strategies,
        mode: str = Default.mode,
        per_sample_tables: bool = Default.per_sample_tables,
        missing_samples_action: ErrorAction = DensityDefault.missing_samples_action,
        column_candidates: Mapping[str, Sequence[str]] = genomics_io.Default.breakpoint_column_candidates,
        n_jobs: Optional[int] = Default.n_jobs
) -> List[str]:
    f"""
    Load inputs, compute per-sample and / or per-histology-group breakpoint densities, and write them to output_dir.
    Args:
        chrom_sizes_file: Text
            Chromosome sizes (BED-like or two-column, no header). Only autosomes are binned.
        output_dir: Text
            Directory to write outputs to. Created if it does not exist.
        dataset_files: Mapping[str, Optional[Text]]
            dataset name -> breakpoint table path (None if not supplied). At least one must be supplied.
        uncallable_file: Text or None (Default=None)
            BED file of uncallable regions. If None, every bin is fully callable.
        metadata_file: Text or None (Default=None)
            Sample metadata table. Required for group mode.
        bin_size: int (Default={Default.bin_size})
            Width of bins in base pairs
        perc_cutoff: float (Default={Default.perc_cutoff})
            Minimum callable fraction for a bin to report a count
        histology_column: str (Default={Default.histology_column})
            Metadata column holding the histology label
        metadata_sample_column: str or None (Default=None)
            Metadata column holding the sample ID. If None, use the first present of:
            {genomics_io.Default.metadata_sample_candidates}
        excluded_strategies: Collection[str] (Default={Default.excluded_strategies})
            Samples with these experimental strategies are not processed
        mode: str (Default={Default.mode})
            "{Keys.individual}", "{Keys.group}", or "{Keys.both}"
        per_sample_tables: bool (Default={Default.per_sample_tables})
            In individual mode, also write one table per sample and dataset
        missing_samples_action: ErrorAction (Default={Default.missing_samples})
            Policy for a sample / group with no breakpoints in a dataset
        column_candidates: Mapping[str, Sequence[str]]
            Internal key -> candidate breakpoint column names, in priority order
        n_jobs: int or None (Default={Default.n_jobs})
            Number of parallel workers. If <= 1, run serially.
    Returns:
        written: List[str]
            Paths of all files written
    """
    if mode not in (Keys.individual, Keys.group, Keys.both):
        raise ConfigurationError(f"mode must be one of {Keys.individual}, {Keys.group}, {Keys.both}; got {mode}")
    run_individual = mode in (Keys.individual, Keys.both)
    run_group = mode in (Keys.group, Keys.both)
    if run_group and metadata_file is None:
        raise ConfigurationError(f"mode '{mode}' requires sample metadata")

    chrom_sizes = genomics_io.load_chrom_sizes(chrom_sizes_file)
    uncallable_regions = None if uncallable_file is None else genomics_io.load_uncallable_regions(uncallable_file)
    try:
        context = BinningContext.build(chrom_sizes, uncallable_regions, bin_size=bin_size, perc_cutoff=perc_cutoff)
    except ConfigurationError as configuration_error:
        common.add_exception_context(configuration_error, chrom_sizes_file)
        raise
    datasets = load_datasets(dataset_files, column_candidates=column_candidates)
    metadata = None if metadata_file is None else genomics_io.load_sample_metadata(
        metadata_file, histology_column=histology_column,
        sample_candidates=genomics_io.Default.metadata_sample_candidates if metadata_sample_column is None
        else (metadata_sample_column,)
    )

    os.makedirs(output_dir, exist_ok=True)
    bins_file = os.path.join(output_dir, Default.bins_file)
    genomics_io.pandas_to_tsv(bins_file, context.bins_table())
    written = [bins_file]
    skipped = {}

    if run_individual:
        sample_ids = cohort.get_cohort_sample_ids(datasets, metadata, excluded_strategies=excluded_strategies)
        densities, skipped[Keys.individual] = cohort.get_individual_densities(
            datasets, sample_ids, context, missing_samples_action=missing_samples_action, n_jobs=n_jobs
        )
        written.extend(write_individual_densities(output_dir, densities, per_sample_tables=per_sample_tables))
    if run_group:
        sample_groups = cohort.get_histology_groups(metadata, excluded_strategies=excluded_strategies)
        densities, skipped[Keys.group] = cohort.get_group_densities(
            datasets, sample_groups, context, missing_samples_action=missing_samples_action, n_jobs=n_jobs
        )
        written.extend(write_group_densities(output_dir, densities))

    skipped_file = write_skipped_units(output_dir, skipped)
    if skipped_file is not None:
        written.append(skipped_file)
    logging.info(f"Wrote {len(written)} files to {output_dir}")
    return written


def __parse_arguments(argv: List[Text]) -> argparse.Namespace:
    # noinspection PyTypeChecker
    parser = argparse.ArgumentParser(
        description="Count structural-variant breakpoints in fixed-width genome bins, per sample and per histology "
                    "group, masking bins with too little callable sequence",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        prog=argv[0]
    )
    parser.add_argument("--chrom-sizes", type=str, required=True,
                        help="Chromosome sizes: BED-like (contig, 0, length) or two-column (contig, length), no header")
    parser.add_argument("--uncallable", type=str,
                        help="BED file of uncallable regions. If omitted, every bin is fully callable.")
    parser.add_argument("--intersection", type=str, help="Breakpoints found by both SV and CNV callers")
    parser.add_argument("--cnv", type=str, help="CNV breakpoints")
    parser.add_argument("--sv", type=str, help="SV breakpoints")
    parser.add_argument("--metadata", type=str,
                        help="Tab-delimited sample metadata with sample ID, histology and experimental strategy")
    parser.add_argument("--output-dir", "-O", type=str, required=True, help="Directory to write results to")
    parser.add_argument("--bin-size", type=int, default=Default.bin_size, help="Width of genome bins in bp")
    parser.add_argument("--perc-cutoff", type=float, default=Default.perc_cutoff,
                        help="Bins with callable fraction below this value report NA")
    parser.add_argument("--histology-column", type=str, default=Default.histology_column,
                        help="Metadata column used to group samples")
    parser.add_argument("--metadata-sample-column", type=str,
                        help=f"Metadata column holding the sample ID. If not given, use the first present of: "
                             f"{','.join(genomics_io.Default.metadata_sample_candidates)}")
    parser.add_argument("--exclude-strategy", type=str, action="append",
                        help=f"Experimental strategy to exclude. Can be repeated. If not given, exclude: "
                             f"{','.join(Default.excluded_strategies)}")
    parser.add_argument("--mode", type=str, default=Default.mode,
                        choices=(Keys.individual, Keys.group, Keys.both),
                        help="Compute densities per sample, per histology group, or both")
    parser.add_argument("--per-sample-tables", action="store_true",
                        help="Also write one table per sample and dataset")
    parser.add_argument("--missing-samples", type=str, default=Default.missing_samples,
                        choices=("ignore", "warn", "raise"),
                        help="What to do when a sample or group has no breakpoints in a dataset. With 'raise' the "
                             "unit is skipped and reported.")
    parser.add_argument("--columns-json", type=str,
                        help="JSON mapping of sample_id / contig / coordinate to breakpoint column name(s), overriding "
                             "the default candidates")
    parser.add_argument("--n-jobs", "-j", type=int, default=Default.n_jobs,
                        help="Number of parallel workers. If < 0, use all available cpus")
    parser.add_argument("--log-level", type=str, default=Default.log_level,
                        choices=("DEBUG", "INFO", "WARNING", "ERROR"), help="Logging level")
    parsed_arguments = parser.parse_args(argv[1:] if len(argv) > 1 else ["--help"])
    return parsed_arguments


def main(argv: Optional[List[Text]] = None) -> List[str]:
    arguments = __parse_arguments(sys.argv if argv is None else argv)
    logging.basicConfig(format=Default.log_format, level=getattr(logging, arguments.log_level))
    return compute_breakpoint_density(
        chrom_sizes_file=arguments.chrom_sizes,
        output_dir=arguments.output_dir,
        dataset_files=dict(zip(DensityDefault.dataset_names, (arguments.intersection, arguments.cnv, arguments.sv))),
        uncallable_file=arguments.uncallable,
        metadata_file=arguments.metadata,
        bin_size=arguments.bin_size,
        perc_cutoff=arguments.perc_cutoff,
        histology_column=arguments.histology_column,
        metadata_sample_column=arguments.metadata_sample_column,
        excluded_strategies=Default.excluded_strategies if arguments.exclude_strategy is None
        else tuple(arguments.exclude_strategy),
        mode=arguments.mode,
        per_sample_tables=arguments.per_sample_tables,
        missing_samples_action=ErrorAction.from_name(arguments.missing_samples),
        column_candidates=genomics_io.load_column_candidates(arguments.columns_json),
        n_jobs=arguments.n_jobs
    )


if __name__ == "__main__":
    main()
