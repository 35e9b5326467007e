import logging

import numpy
import pandas

from breakpoint_density import genomics_io, genome_bins, interval_overlaps


class Keys:
    contig = genomics_io.Keys.contig
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end
    callable_fraction = genomics_io.Keys.callable_fraction


def compute_uncallable_length(bins: pandas.DataFrame, uncallable_regions: pandas.DataFrame) -> pandas.Series:
    """
    Length of each bin covered by the union of uncallable regions. Overlapping regions count only once.
    Args:
        bins: pandas.DataFrame
            Table of bins (from genome_bins.make_bins)
        uncallable_regions: pandas.DataFrame
            Table of uncallable intervals with columns "contig", "begin", "end", in any order, possibly overlapping
    Returns:
        uncallable_length: pandas.Series
            Uncallable base pairs in each bin, aligned with bins
    """
    genomics_io.check_required_columns(uncallable_regions, (Keys.contig, Keys.begin, Keys.end), "uncallable regions")
    merged = interval_overlaps.merge_intervals(uncallable_regions)
    uncallable_length = numpy.zeros(len(bins), dtype=genomics_io.Default.int_type)
    bin_contigs = bins[Keys.contig].to_numpy(dtype=str)
    unknown_contigs = set(merged[Keys.contig]).difference(bin_contigs)
    if unknown_contigs:
        logging.debug(f"Ignoring uncallable regions on contigs without bins: {','.join(sorted(unknown_contigs))}")

    for contig, contig_regions in merged.groupby(Keys.contig, sort=False):
        is_contig = bin_contigs == contig
        if not is_contig.any():
            continue
        begins = contig_regions[Keys.begin].values
        ends = contig_regions[Keys.end].values
        uncallable_length[is_contig] = (
            interval_overlaps.covered_length(begins, ends, bins.loc[is_contig, Keys.end].values)
            - interval_overlaps.covered_length(begins, ends, bins.loc[is_contig, Keys.begin].values)
        )
    return pandas.Series(uncallable_length, index=bins.index, name="uncallable_length")


def compute_callable_fraction(bins: pandas.DataFrame, uncallable_regions: pandas.DataFrame) -> pandas.Series:
    """
    Fraction of each bin that is callable: 1 - (unioned uncallable overlap / bin length), clamped to [0, 1]. The
    truncated last bin of a chromosome is measured against its true length.
    Args:
        bins: pandas.DataFrame
            Table of bins (from genome_bins.make_bins)
        uncallable_regions: pandas.DataFrame
            Table of uncallable intervals with columns "contig", "begin", "end"
    Returns:
        callable_fraction: pandas.Series
            Callable fraction of each bin, aligned with bins
    """
    uncallable_length = compute_uncallable_length(bins, uncallable_regions).values
    callable_fraction = 1.0 - uncallable_length / genome_bins.bin_lengths(bins)
    return pandas.Series(numpy.clip(callable_fraction, 0.0, 1.0), index=bins.index, name=Keys.callable_fraction)
