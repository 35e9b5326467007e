from typing import Iterator, Union

import numpy
import pandas

from breakpoint_density import genomics_io

IntArray = Union[int, numpy.ndarray]


class Keys:
    contig = genomics_io.Keys.contig
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end


def overlap_length(begin: IntArray, end: IntArray, other_begin: IntArray, other_end: IntArray) -> IntArray:
    """
    Length of overlap between half-open intervals [begin, end) and [other_begin, other_end). Works element-wise on
    numpy arrays. Never negative.
    """
    return numpy.maximum(0, numpy.minimum(end, other_end) - numpy.maximum(begin, other_begin))


def is_contained(position: IntArray, begin: IntArray, end: IntArray) -> Union[bool, numpy.ndarray]:
    """ True where begin <= position < end """
    return (begin <= position) & (position < end)


def get_connected_components_from_contig_intervals(
        contig_intervals_df: pandas.DataFrame,
        evidence_needs_sort: bool = True,
        allowed_gap: int = 0,
) -> Iterator[pandas.DataFrame]:
    """
    From list of intervals, find connected components (maximal lists of intervals that cannot be divided without
    separating overlapping intervals)
    Args:
        contig_intervals_df: pandas.DataFrame
            Table of intervals from one contig (with begin, end)
        evidence_needs_sort: bool (Default=True)
            contig_intervals_df must be sorted key=(begin, end) for this algorithm. If it is already sorted, this flag
            can be set to False for speed-up.
        allowed_gap: int (Default=0)
            minimum gap between end of one interval and beginning of another that does not connect component. With
            the default of 0, abutting intervals are joined.
    Yields:
        connected_components: pandas.DataFrame
            intervals in each connected component sorted by (begin, end)
    """
    if len(contig_intervals_df) == 0:
        return

    if evidence_needs_sort:
        contig_intervals_df = contig_intervals_df.sort_values([Keys.begin, Keys.end])

    max_end = numpy.maximum.accumulate(contig_intervals_df[Keys.end].values)[:-1]
    start_inds = 1 + numpy.nonzero(contig_intervals_df[Keys.begin].values[1:] > max_end + allowed_gap)[0]
    if start_inds.size:
        yield contig_intervals_df.iloc[:start_inds[0]]
        for n in range(len(start_inds) - 1):
            yield contig_intervals_df.iloc[start_inds[n]:start_inds[n + 1]]
        yield contig_intervals_df.iloc[start_inds[-1]:]
    else:
        yield contig_intervals_df


def merge_intervals(intervals_df: pandas.DataFrame) -> pandas.DataFrame:
    """
    Compute the union of a set of (possibly overlapping) genomic intervals.
    Args:
        intervals_df: pandas.DataFrame
            Table of intervals with columns "contig", "begin", "end". Intervals with end <= begin are empty and dropped.
    Returns:
        merged: pandas.DataFrame
            Disjoint intervals covering exactly the same positions as intervals_df, sorted in canonical contig order,
            then by begin.
    """
    is_empty = intervals_df[Keys.end] <= intervals_df[Keys.begin]
    intervals_df = intervals_df.loc[~is_empty, [Keys.contig, Keys.begin, Keys.end]]
    if len(intervals_df) == 0:
        return pandas.DataFrame({
            Keys.contig: pandas.Series([], dtype=str),
            Keys.begin: numpy.array([], dtype=genomics_io.Default.int_type),
            Keys.end: numpy.array([], dtype=genomics_io.Default.int_type)
        })
    intervals_df = genomics_io.sort_intervals_table(intervals_df)
    merged = [
        (contig, component[Keys.begin].iat[0], component[Keys.end].max())
        for contig, contig_intervals in intervals_df.groupby(Keys.contig, sort=True, observed=True)
        for component in get_connected_components_from_contig_intervals(contig_intervals, evidence_needs_sort=False)
    ]
    merged = pandas.DataFrame(merged, columns=[Keys.contig, Keys.begin, Keys.end])
    return merged.astype({Keys.contig: str, Keys.begin: genomics_io.Default.int_type,
                          Keys.end: genomics_io.Default.int_type})


def covered_length(merged_begin: numpy.ndarray, merged_end: numpy.ndarray, positions: IntArray) -> numpy.ndarray:
    """
    For each position, total length of the disjoint intervals [merged_begin, merged_end) that lies in [0, position).
    The length of the union covering a window [a, b) is then covered_length(b) - covered_length(a).
    Args:
        merged_begin: numpy.ndarray
            Sorted begins of disjoint intervals on one contig (e.g. from merge_intervals)
        merged_end: numpy.ndarray
            Ends corresponding to merged_begin
        positions: int or numpy.ndarray
            Positions to evaluate
    Returns:
        covered: numpy.ndarray
            Covered length before each position
    """
    positions = numpy.asarray(positions, dtype=genomics_io.Default.int_type)
    if len(merged_begin) == 0:
        return numpy.zeros(positions.shape, dtype=genomics_io.Default.int_type)
    merged_begin = numpy.asarray(merged_begin, dtype=genomics_io.Default.int_type)
    merged_end = numpy.asarray(merged_end, dtype=genomics_io.Default.int_type)
    cumulative = numpy.concatenate(([0], numpy.cumsum(merged_end - merged_begin)))
    # index of the last interval beginning at or before each position
    last = numpy.searchsorted(merged_begin, positions, side="right") - 1
    clipped = numpy.maximum(last, 0)
    partial = numpy.minimum(positions, merged_end[clipped]) - merged_begin[clipped]
    return numpy.where(last >= 0, cumulative[clipped] + partial, 0)
