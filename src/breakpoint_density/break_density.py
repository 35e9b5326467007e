import logging
from typing import Collection, Dict, FrozenSet, Mapping, Optional, Tuple, Union

import numpy
import pandas

from breakpoint_density import genomics_io, genome_bins, callability
from breakpoint_density.common import ConfigurationError, DataShapeError, ErrorAction, InvalidSampleError

SampleIds = Union[str, Collection[str]]
Datasets = Mapping[str, pandas.DataFrame]


class Keys:
    contig = genomics_io.Keys.contig
    bin_index = genomics_io.Keys.bin_index
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end
    callable_fraction = genomics_io.Keys.callable_fraction
    count = genomics_io.Keys.count
    sample_id = genomics_io.Keys.sample_id
    coordinate = genomics_io.Keys.coordinate


class Default:
    bin_size = genome_bins.Default.bin_size
    perc_cutoff = 0.75
    missing_samples_action = ErrorAction.RaiseException
    count_dtype = genomics_io.Default.count_dtype
    dataset_names = ("intersection", "cnv", "sv")


def _check_perc_cutoff(perc_cutoff: float) -> float:
    try:
        perc_cutoff = float(perc_cutoff)
    except (TypeError, ValueError):
        raise ConfigurationError(f"perc_cutoff must be a number, got {perc_cutoff!r}")
    if not 0.0 <= perc_cutoff <= 1.0:
        raise ConfigurationError(f"perc_cutoff must be in [0, 1], got {perc_cutoff}")
    return perc_cutoff


class BinningContext:
    """
    Read-only genome setup shared by every density calculation in a run: the bins, their callable fractions, the bin
    size, and the default callability cutoff. Build it once (usually with BinningContext.build) and pass it to
    break_density / break_density_vector. Nothing here is modified after construction.
    """
    __slots__ = ("_bins", "_callable_fraction", "_bin_size", "_perc_cutoff", "_contigs", "_contig_first_bin",
                 "_contig_num_bins", "_contig_length")

    def __init__(
            self,
            bins: pandas.DataFrame,
            callable_fraction: pandas.Series,
            bin_size: int,
            perc_cutoff: float = Default.perc_cutoff
    ):
        genomics_io.check_required_columns(bins, (Keys.contig, Keys.bin_index, Keys.begin, Keys.end), "bins")
        if len(callable_fraction) != len(bins):
            raise ConfigurationError(
                f"callable_fraction has {len(callable_fraction)} values but there are {len(bins)} bins"
            )
        if not isinstance(bin_size, (int, numpy.integer)) or bin_size <= 0:
            raise ConfigurationError(f"bin_size must be a positive integer, got {bin_size!r}")
        self._bins = bins.reset_index(drop=True)
        self._callable_fraction = pandas.Series(
            numpy.asarray(callable_fraction, dtype=float), index=self._bins.index, name=Keys.callable_fraction
        )
        self._bin_size = int(bin_size)
        self._perc_cutoff = _check_perc_cutoff(perc_cutoff)

        contig_values = self._bins[Keys.contig].to_numpy(dtype=str)
        contigs, first_bin, num_bins = numpy.unique(contig_values, return_index=True, return_counts=True)
        order = numpy.argsort(first_bin)
        self._contigs = tuple(str(contig) for contig in contigs[order])
        self._contig_first_bin = first_bin[order].astype(genomics_io.Default.int_type)
        self._contig_num_bins = num_bins[order].astype(genomics_io.Default.int_type)
        self._contig_length = self._bins[Keys.end].values[self._contig_first_bin + self._contig_num_bins - 1]
        if not numpy.array_equal(numpy.concatenate(([0], numpy.cumsum(self._contig_num_bins)[:-1])),
                                 self._contig_first_bin):
            raise ConfigurationError("bins of each contig must be consecutive rows")

    @staticmethod
    def build(
            chrom_sizes: Union[pandas.Series, Mapping[str, int]],
            uncallable_regions: Optional[pandas.DataFrame] = None,
            bin_size: int = Default.bin_size,
            perc_cutoff: float = Default.perc_cutoff
    ) -> "BinningContext":
        f"""
        Make bins and compute their callable fractions.
        Args:
            chrom_sizes: pandas.Series or Mapping[str, int]
                Chromosome length indexed by contig
            uncallable_regions: pandas.DataFrame or None (Default=None)
                Table of uncallable intervals ("contig", "begin", "end"). If None, every bin is fully callable.
            bin_size: int (Default={Default.bin_size})
                Width of bins in base pairs
            perc_cutoff: float (Default={Default.perc_cutoff})
                Default minimum callable fraction for a bin to report a count
        Returns:
            context: BinningContext
        """
        bins = genome_bins.make_bins(chrom_sizes, bin_size=bin_size)
        if uncallable_regions is None:
            callable_fraction = pandas.Series(1.0, index=bins.index, name=Keys.callable_fraction)
        else:
            callable_fraction = callability.compute_callable_fraction(bins, uncallable_regions)
        logging.info(f"Made {len(bins)} bins of {bin_size} bp on {bins[Keys.contig].nunique()} contigs")
        return BinningContext(bins, callable_fraction, bin_size=bin_size, perc_cutoff=perc_cutoff)

    @property
    def bins(self) -> pandas.DataFrame:
        return self._bins

    @property
    def callable_fraction(self) -> pandas.Series:
        return self._callable_fraction

    @property
    def bin_size(self) -> int:
        return self._bin_size

    @property
    def perc_cutoff(self) -> float:
        return self._perc_cutoff

    @property
    def contigs(self) -> Tuple[str, ...]:
        return self._contigs

    @property
    def num_bins(self) -> int:
        return len(self._bins)

    def bins_table(self) -> pandas.DataFrame:
        """ Copy of the bins with their callable fraction attached """
        return self._bins.assign(**{Keys.callable_fraction: self._callable_fraction.values})

    def is_masked(self, perc_cutoff: Optional[float] = None) -> numpy.ndarray:
        """ Boolean array, True for bins with callable fraction below the cutoff """
        perc_cutoff = self._perc_cutoff if perc_cutoff is None else _check_perc_cutoff(perc_cutoff)
        return self._callable_fraction.values < perc_cutoff

    def locate_bins(self, contigs: numpy.ndarray, coordinates: numpy.ndarray) -> (numpy.ndarray, numpy.ndarray):
        """
        Find the row of the bin containing each (contig, coordinate).
        Args:
            contigs: numpy.ndarray
                Contig of each position
            coordinates: numpy.ndarray
                Integer coordinate of each position
        Returns:
            bin_rows: numpy.ndarray
                Row in self.bins of the containing bin, or -1 where is_valid is False
            is_valid: numpy.ndarray
                False for positions on contigs without bins, or outside [0, chromosome length]. A coordinate equal to
                the chromosome length is placed in the last bin.
        """
        codes = pandas.Categorical(contigs, categories=list(self._contigs)).codes
        is_known = codes >= 0
        safe_codes = numpy.where(is_known, codes, 0)
        coordinates = numpy.asarray(coordinates, dtype=genomics_io.Default.int_type)
        is_valid = is_known & (coordinates >= 0) & (coordinates <= self._contig_length[safe_codes])
        bin_in_contig = numpy.minimum(coordinates // self._bin_size, self._contig_num_bins[safe_codes] - 1)
        bin_rows = numpy.where(is_valid, self._contig_first_bin[safe_codes] + bin_in_contig, -1)
        return bin_rows, is_valid


def _as_sample_set(sample_ids: SampleIds) -> FrozenSet[str]:
    if isinstance(sample_ids, str):
        return frozenset((sample_ids,))
    sample_set = frozenset(str(sample_id) for sample_id in sample_ids)
    if not sample_set:
        raise InvalidSampleError("No sample IDs were requested")
    return sample_set


def _masked_counts(
        breakpoints: pandas.DataFrame,
        sample_ids: SampleIds,
        context: BinningContext,
        perc_cutoff: Optional[float],
        missing_samples_action: ErrorAction
) -> pandas.api.extensions.ExtensionArray:
    """ Count breakpoints of the requested samples in each bin, then overwrite low-callability bins with NA """
    genomics_io.check_required_columns(breakpoints, (Keys.sample_id, Keys.contig, Keys.coordinate), "breakpoints")
    if not pandas.api.types.is_integer_dtype(breakpoints[Keys.coordinate]):
        raise DataShapeError(f"breakpoint {Keys.coordinate} must be integers, not {breakpoints[Keys.coordinate].dtype}")
    is_masked = context.is_masked(perc_cutoff)
    sample_set = _as_sample_set(sample_ids)

    is_wanted = breakpoints[Keys.sample_id].isin(list(sample_set)).to_numpy(dtype=bool)
    if not is_wanted.any():
        missing_samples_action.handle_error(
            f"None of the requested sample(s) have breakpoints in this dataset: {','.join(sorted(sample_set))}",
            exception_type=InvalidSampleError
        )

    bin_rows, is_valid = context.locate_bins(
        breakpoints[Keys.contig].to_numpy(dtype=str)[is_wanted], breakpoints[Keys.coordinate].to_numpy()[is_wanted]
    )
    num_dropped = int((~is_valid).sum())
    if num_dropped:
        logging.debug(f"{num_dropped} breakpoint(s) are on contigs without bins or outside chromosome bounds")
    counts = pandas.array(numpy.bincount(bin_rows[is_valid], minlength=context.num_bins), dtype=Default.count_dtype)
    counts[is_masked] = genomics_io.NA
    return counts


def break_density(
        breakpoints: pandas.DataFrame,
        sample_ids: SampleIds,
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action
) -> pandas.DataFrame:
    f"""
    Count breakpoints of one sample, or of a set of samples pooled together, in every bin.
    Args:
        breakpoints: pandas.DataFrame
            Breakpoints of one dataset, with columns "sample_id", "contig", "coordinate" (integer)
        sample_ids: str or Collection[str]
            Sample(s) whose breakpoints are counted. Several samples are pooled into the same bins (group density).
        context: BinningContext
            Bins and callable fractions for this run
        perc_cutoff: float or None (Default=None)
            Minimum callable fraction for a bin to report a count; bins below it are NA even if breakpoints land there.
            If None, use context.perc_cutoff (by default {Default.perc_cutoff}).
        missing_samples_action: ErrorAction (Default={Default.missing_samples_action})
            What to do if none of the requested samples appear in breakpoints:
                RaiseException: raise InvalidSampleError
                Warn: warn and return all-zero counts (NA where masked)
                Ignore: return all-zero counts (NA where masked)
    Returns:
        density: pandas.DataFrame
            One row per bin, in context.bins order, with the bin columns ("contig", "bin_index", "begin", "end"),
            "callable_fraction", and "count" (Int64, NA in masked bins).
    """
    counts = _masked_counts(breakpoints, sample_ids, context, perc_cutoff, missing_samples_action)
    return context.bins_table().assign(**{Keys.count: counts})


def break_density_vector(
        breakpoints: pandas.DataFrame,
        sample_ids: SampleIds,
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action,
        name: Optional[str] = None
) -> pandas.Series:
    """
    Compact form of break_density: only the masked counts, as an Int64 Series aligned with context.bins order.
    Args:
        breakpoints, sample_ids, context, perc_cutoff, missing_samples_action:
            see break_density
        name: str or None (Default=None)
            Name of returned Series. If None and a single sample was requested, use the sample ID.
    Returns:
        density: pandas.Series
            Count (or NA) per bin
    """
    counts = _masked_counts(breakpoints, sample_ids, context, perc_cutoff, missing_samples_action)
    if name is None and isinstance(sample_ids, str):
        name = sample_ids
    return pandas.Series(counts, index=context.bins.index, name=name)


def all_break_density(
        datasets: Datasets,
        sample_ids: SampleIds,
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action
) -> Dict[str, pandas.DataFrame]:
    """
    Run break_density with the same samples, context and cutoff on every dataset.
    Returns:
        densities: Dict[str, pandas.DataFrame]
            dataset name -> per-bin density table, in the order of datasets
    """
    return {
        dataset_name: break_density(
            breakpoints, sample_ids, context, perc_cutoff=perc_cutoff, missing_samples_action=missing_samples_action
        )
        for dataset_name, breakpoints in datasets.items()
    }


def all_break_density_vectors(
        datasets: Datasets,
        sample_ids: SampleIds,
        context: BinningContext,
        perc_cutoff: Optional[float] = None,
        missing_samples_action: ErrorAction = Default.missing_samples_action,
        name: Optional[str] = None
) -> Dict[str, pandas.Series]:
    """
    Run break_density_vector with the same samples, context and cutoff on every dataset.
    Returns:
        densities: Dict[str, pandas.Series]
            dataset name -> per-bin counts, in the order of datasets
    """
    return {
        dataset_name: break_density_vector(
            breakpoints, sample_ids, context, perc_cutoff=perc_cutoff, missing_samples_action=missing_samples_action,
            name=name
        )
        for dataset_name, breakpoints in datasets.items()
    }
