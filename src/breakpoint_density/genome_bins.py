from typing import Iterable, List, Mapping, Union

import numpy
import pandas

from breakpoint_density import genomics_io
from breakpoint_density.common import ConfigurationError


class Keys:
    contig = genomics_io.Keys.contig
    bin_index = genomics_io.Keys.bin_index
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end


class Default:
    bin_size = 1_000_000


def canonical_contig_order(contigs: Iterable[str]) -> List[str]:
    """ Order contigs 1..22 numerically (with or without "chr" prefix), then any others """
    return sorted(contigs, key=genomics_io.contig_sort_key)


def _check_chrom_sizes(chrom_sizes: Union[pandas.Series, Mapping[str, int]]) -> pandas.Series:
    if not isinstance(chrom_sizes, pandas.Series):
        chrom_sizes = pandas.Series(dict(chrom_sizes), dtype=object)
    if len(chrom_sizes) == 0:
        raise ConfigurationError("Chromosome size table is empty")
    if chrom_sizes.index.has_duplicates:
        raise ConfigurationError("Chromosome size table lists a contig more than once")
    try:
        lengths = numpy.array([int(length) for length in chrom_sizes.values], dtype=genomics_io.Default.int_type)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Chromosome lengths must be integers: {error}") from error
    if not numpy.array_equal(lengths, chrom_sizes.values.astype(float)):
        raise ConfigurationError("Chromosome lengths must be whole numbers")
    bad_contigs = chrom_sizes.index[lengths <= 0].tolist()
    if bad_contigs:
        raise ConfigurationError(f"Chromosome lengths must be > 0, problem with: {','.join(map(str, bad_contigs))}")
    return pandas.Series(lengths, index=chrom_sizes.index.astype(str))


def make_bins(
        chrom_sizes: Union[pandas.Series, Mapping[str, int]],
        bin_size: int = Default.bin_size
) -> pandas.DataFrame:
    f"""
    Partition every chromosome into fixed-width windows.
    Args:
        chrom_sizes: pandas.Series or Mapping[str, int]
            Chromosome length indexed by contig.
        bin_size: int (Default={Default.bin_size})
            Width of bins in base pairs. The last bin of each chromosome is truncated at the chromosome end.
    Returns:
        bins: pandas.DataFrame
            Bins in canonical contig order then by bin_index, with columns
                contig: ordered categorical
                bin_index: index of bin within its contig
                begin: bin_index * bin_size
                end: min(begin + bin_size, chromosome length)
            Bins of a contig are contiguous and exactly cover [0, chromosome length).
    """
    if isinstance(bin_size, (bool, numpy.bool_)) or not isinstance(bin_size, (int, numpy.integer)):
        raise ConfigurationError(f"bin_size must be an integer, got {bin_size!r}")
    if bin_size <= 0:
        raise ConfigurationError(f"bin_size must be > 0, got {bin_size}")
    chrom_sizes = _check_chrom_sizes(chrom_sizes)
    contigs = canonical_contig_order(chrom_sizes.index)

    num_bins = [-(-int(chrom_sizes[contig]) // bin_size) for contig in contigs]
    bin_index = numpy.concatenate([numpy.arange(n, dtype=genomics_io.Default.int_type) for n in num_bins])
    begin = bin_index * bin_size
    lengths = numpy.repeat([chrom_sizes[contig] for contig in contigs], num_bins)
    return pandas.DataFrame({
        Keys.contig: pandas.Categorical(numpy.repeat(contigs, num_bins), categories=contigs, ordered=True),
        Keys.bin_index: bin_index,
        Keys.begin: begin,
        Keys.end: numpy.minimum(begin + bin_size, lengths).astype(genomics_io.Default.int_type),
    })


def bin_lengths(bins: pandas.DataFrame) -> numpy.ndarray:
    return (bins[Keys.end] - bins[Keys.begin]).values
