import logging
import warnings
from typing import Collection, Dict, Iterable, Mapping, Optional, Tuple

import numpy
import pandas
with warnings.catch_warnings():
    # pympler has some deprecated matrix stuff, I don't want warnings cluttering things up
    warnings.simplefilter("ignore")
    from pympler import asizeof

from breakpoint_density import genomics_io, parallel_tools
from breakpoint_density.break_density import (
    BinningContext, Datasets, all_break_density, all_break_density_vectors
)
from breakpoint_density.common import DataShapeError, ErrorAction, InvalidSampleError

SampleGroups = Mapping[str, Collection[str]]
Skipped = Dict[str, str]


class Keys:
    contig = genomics_io.Keys.contig
    bin_index = genomics_io.Keys.bin_index
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end
    sample_id = genomics_io.Keys.sample_id
    histology = genomics_io.Keys.histology
    experimental_strategy = genomics_io.Keys.experimental_strategy


class Default:
    excluded_strategies = ("RNA-Seq",)
    missing_samples_action = ErrorAction.RaiseException
    n_jobs = parallel_tools.Default.n_jobs
    update_time = parallel_tools.Default.update_time
    # bytes per bin per dataset in a result: nullable integer value + mask
    result_bytes_per_bin = 9


def check_datasets(datasets: Datasets) -> Dict[str, pandas.DataFrame]:
    """
    Validate the shape of every breakpoint dataset. A dataset that fails with DataShapeError is logged and dropped so
    that the others can still be processed.
    Args:
        datasets: Mapping[str, pandas.DataFrame]
            dataset name -> breakpoint table
    Returns:
        checked_datasets: Dict[str, pandas.DataFrame]
            dataset name -> breakpoint table with canonical column types, for every dataset that passed
    """
    checked_datasets = {}
    for dataset_name, breakpoints in datasets.items():
        try:
            checked_datasets[dataset_name] = genomics_io.check_breakpoints(breakpoints, context=dataset_name)
        except DataShapeError as data_shape_error:
            logging.error(f"Dropping dataset {dataset_name}: {data_shape_error}")
    if not checked_datasets:
        raise DataShapeError(f"No valid breakpoint datasets among: {','.join(datasets)}")
    return checked_datasets


def _excluded_by_strategy(metadata: pandas.DataFrame, excluded_strategies: Collection[str]) -> numpy.ndarray:
    if Keys.experimental_strategy not in metadata.columns:
        return numpy.zeros(len(metadata), dtype=bool)
    return metadata[Keys.experimental_strategy].isin(list(excluded_strategies)).to_numpy(dtype=bool)


def get_histology_groups(
        metadata: pandas.DataFrame,
        histology_column: str = Keys.histology,
        excluded_strategies: Collection[str] = Default.excluded_strategies,
        sample_ids: Optional[Collection[str]] = None
) -> Dict[str, Tuple[str, ...]]:
    f"""
    Partition samples into histology groups.
    Args:
        metadata: pandas.DataFrame
            Sample metadata indexed by sample ID (e.g. from genomics_io.load_sample_metadata)
        histology_column: str (Default={Keys.histology})
            Column of metadata holding the group label
        excluded_strategies: Collection[str] (Default={Default.excluded_strategies})
            Samples with one of these experimental strategies are dropped
        sample_ids: Collection[str] or None (Default=None)
            If not None, only these samples are placed into groups
    Returns:
        sample_groups: Dict[str, Tuple[str, ...]]
            Group label -> sample IDs. Groups are sorted by label, samples keep metadata order, and every sample is in
            at most one group. Samples without a label are dropped.
    """
    genomics_io.check_required_columns(metadata, (histology_column,), "sample metadata")
    labels = metadata[histology_column].map(lambda label: label.strip() if isinstance(label, str) else None)
    is_labeled = (labels.notnull() & (labels != "")).to_numpy(dtype=bool)
    keep = is_labeled & ~_excluded_by_strategy(metadata, excluded_strategies)
    if sample_ids is not None:
        keep = keep & metadata.index.isin(list(sample_ids))
    labels = labels[keep]
    # the first row of a duplicated sample wins, so groups stay disjoint
    labels = labels[~labels.index.duplicated(keep="first")]
    sample_groups = {
        label: tuple(str(sample_id) for sample_id in labels.index[(labels == label).values])
        for label in sorted(labels.unique())
    }
    logging.info(f"Found {len(sample_groups)} histology groups with {len(labels)} samples")
    return sample_groups


def get_cohort_sample_ids(
        datasets: Datasets,
        metadata: Optional[pandas.DataFrame] = None,
        excluded_strategies: Collection[str] = Default.excluded_strategies
) -> Tuple[str, ...]:
    """
    Samples processed in individual mode: the metadata samples whose experimental strategy is not excluded, or, without
    metadata, the sorted union of sample IDs over all datasets.
    """
    if metadata is not None:
        is_kept = ~_excluded_by_strategy(metadata, excluded_strategies)
        return tuple(pandas.unique(metadata.index[is_kept].astype(str)))
    return tuple(sorted(set().union(*(breakpoints[Keys.sample_id].astype(str) for breakpoints in datasets.values()))))


def _unit_densities(
        unit: Tuple[str, Collection[str]],
        aggregate: str,
        datasets: Datasets,
        context: BinningContext,
        perc_cutoff: Optional[float],
        missing_samples_action: ErrorAction
) -> Tuple[str, Optional[dict], Optional[str]]:
    """ Compute densities of one sample or group over all datasets. Return the failure reason instead of raising. """
    unit_name, sample_ids = unit
    try:
        if aggregate == "vectors":
            densities = all_break_density_vectors(
                datasets, sample_ids, context, perc_cutoff=perc_cutoff,
                missing_samples_action=missing_samples_action, name=unit_name
            )
        else:
            densities = all_break_density(
                datasets, sample_ids, context, perc_cutoff=perc_cutoff, missing_samples_action=missing_samples_action
            )
        return unit_name, densities, None
    except InvalidSampleError as invalid_sample_error:
        return unit_name, None, str(invalid_sample_error)


def _required_memory(datasets: Datasets, context: BinningContext, num_units: int) -> (float, float):
    """ Estimate (worker, master) memory in GiB, with 2x safety factor on the worker """
    data_size = sum(
        breakpoints.memory_usage(index=True, deep=True).sum() for breakpoints in datasets.values()
    ) + asizeof.asizeof(context) + context.bins.memory_usage(index=True, deep=True).sum()
    result_size = Default.result_bytes_per_bin * context.num_bins * len(datasets)
    required_worker_memory = 2.0 * (data_size + result_size) / 2.0 ** 30
    required_master_memory = (data_size + num_units * result_size) / 2.0 ** 30
    return required_worker_memory, required_master_memory


def _map_units(
        units: Iterable[Tuple[str, Collection[str]]],
        aggregate: str,
        mode: str,
        datasets: Datasets,
        context: BinningContext,
        perc_cutoff: Optional[float],
        missing_samples_action: ErrorAction,
        n_jobs: Optional[int],
        update_time: Optional[float]
) -> (Dict[str, dict], Skipped):
    units = list(units)
    required_worker_memory, required_master_memory = _required_memory(datasets, context, len(units))
    task_sizes = [1 if isinstance(sample_ids, str) else len(sample_ids) for _, sample_ids in units]
    densities, skipped = {}, {}
    for unit_name, unit_densities, reason in parallel_tools.parmap(
            _unit_densities, units, task_sizes=task_sizes,
            description=f"{mode} densities", update_time=update_time,
            args=(aggregate, datasets, context, perc_cutoff, missing_samples_action), n_jobs=n_jobs,
            required_worker_memory=required_worker_memory, required_master_memory=required_master_memory
    ):
        if reason is None:
            densities[unit_name] = unit_densities
        else:
            logging.warning(f"Skipping {mode} unit {unit_name}: {reason}")
            skipped[unit_name] = reason
    return densities, skipped


def get_individual_densities(
        datasets: Datasets,
        sample_ids: Collection[str],
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action,
        n_jobs: Optional[int] = Default.n_jobs,
        update_time: Optional[float] = Default.update_time
) -> (Dict[str, pandas.DataFrame], Skipped):
    f"""
    Compute the density of every sample, separately, in every dataset.
    Args:
        datasets: Mapping[str, pandas.DataFrame]
            dataset name -> breakpoint table
        sample_ids: Collection[str]
            Samples to process, in output column order
        context: BinningContext
            Bins and callable fractions for this run
        perc_cutoff: float or None (Default=None)
            Minimum callable fraction for a bin to report a count. If None, use context.perc_cutoff.
        missing_samples_action: ErrorAction (Default={Default.missing_samples_action})
            Policy for a sample with no breakpoints in a dataset. When it raises InvalidSampleError, the sample is
            skipped.
        n_jobs: int or None (Default={Default.n_jobs})
            Number of parallel workers. If <= 1, run serially.
        update_time: float or None (Default={Default.update_time})
            Minimum seconds between progress bar updates. If None, no progress is displayed.
    Returns:
        densities: Dict[str, pandas.DataFrame]
            dataset name -> table with rows = bins ("contig", "bin_index", "begin", "end") and one Int64 column per
            processed sample, in sample order
        skipped: Dict[str, str]
            skipped sample -> reason
    """
    units = [(sample_id, sample_id) for sample_id in pandas.unique(numpy.array(list(sample_ids), dtype=str))]
    unit_densities, skipped = _map_units(
        units, "vectors", "sample", datasets, context, perc_cutoff, missing_samples_action, n_jobs, update_time
    )
    bins = context.bins[[Keys.contig, Keys.bin_index, Keys.begin, Keys.end]]
    densities = {
        dataset_name: pandas.concat(
            [bins] + [sample_densities[dataset_name] for sample_densities in unit_densities.values()], axis=1
        )
        for dataset_name in datasets
    }
    logging.info(f"Computed densities of {len(unit_densities)} samples, skipped {len(skipped)}")
    return densities, skipped


def get_group_densities(
        datasets: Datasets,
        sample_groups: SampleGroups,
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action,
        n_jobs: Optional[int] = Default.n_jobs,
        update_time: Optional[float] = Default.update_time
) -> (Dict[str, Dict[str, pandas.DataFrame]], Skipped):
    """
    Compute the pooled density of every sample group in every dataset.
    Args:
        sample_groups: Mapping[str, Collection[str]]
            group label -> sample IDs (e.g. from get_histology_groups)
        datasets, context, perc_cutoff, missing_samples_action, n_jobs, update_time:
            see get_individual_densities
    Returns:
        densities: Dict[str, Dict[str, pandas.DataFrame]]
            group label -> dataset name -> density table from break_density.break_density, in group order
        skipped: Dict[str, str]
            skipped group -> reason
    """
    units = [(group, tuple(sample_ids)) for group, sample_ids in sample_groups.items()]
    densities, skipped = _map_units(
        units, "tables", "group", datasets, context, perc_cutoff, missing_samples_action, n_jobs, update_time
    )
    logging.info(f"Computed densities of {len(densities)} groups, skipped {len(skipped)}")
    return densities, skipped
