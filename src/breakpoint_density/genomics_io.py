#!/usr/bin/env python
import io
import os
import json
import logging
from types import MappingProxyType
from typing import Text, Union, Tuple, Mapping, Optional, Sequence, Iterable, Dict, Collection

import numpy
import pandas
import pandas.errors
import pysam

from breakpoint_density.common import ConfigurationError, DataShapeError

NA = pandas.NA  # missing count, allows for nullable integer


class Keys:
    contig = "contig"
    begin = "begin"
    end = "end"
    length = "length"
    bin_index = "bin_index"
    callable_fraction = "callable_fraction"
    count = "count"
    sample_id = "sample_id"
    coordinate = "coordinate"
    histology = "histology"
    experimental_strategy = "experimental_strategy"


class Default:
    int_type = numpy.int64
    count_dtype = "Int64"
    encoding = "utf-8"
    header_start = '#'  # output tables start their header with this string
    na_rep = "NA"
    log_progress = True
    # candidate column names in upstream tables, mapped onto internal keys. The first candidate found is used.
    breakpoint_column_candidates = MappingProxyType({
        Keys.sample_id: ("sample_id", "samples", "Kids_First_Biospecimen_ID", "biospecimen_id"),
        Keys.contig: ("contig", "chrom", "chr", "chromosome"),
        Keys.coordinate: ("coordinate", "coord", "pos", "position", "start"),
    })
    # histology tables carry a participant-level "sample_id" next to the biospecimen ID that breakpoints use
    metadata_sample_candidates = ("Kids_First_Biospecimen_ID", "biospecimen_id", "sample_id", "samples")
    histology_column = "short_histology"
    experimental_strategy_column = "experimental_strategy"
    bed_columns = (Keys.contig, Keys.begin, Keys.end)


def is_autosome(contig: Text) -> bool:
    """ True for chromosomes 1..22, written with or without a "chr" prefix """
    number = contig[3:] if contig.startswith("chr") else contig
    try:
        return 1 <= int(number) <= 22
    except ValueError:
        return False


def contig_sort_key(contig: Text) -> Tuple[int, int, str]:
    """
    Used to put contigs into canonical order: numbered chromosomes numerically, then X, Y, M, then anything else
    lexically. Works for contigs written with or without a "chr" prefix.
    Args:
        contig: str
            Name of contig
    Returns:
        sort_key: Tuple[int, int, str]
            Key for sorting contig
    """
    name = contig[3:] if contig.startswith("chr") else contig
    try:
        return 0, int(name), contig
    except ValueError:
        pass
    special = {"X": 23, "Y": 24, "M": 25, "MT": 25}
    return (1, special[name], contig) if name in special else (2, 0, contig)


def sort_intervals_table(intervals_df: pandas.DataFrame, drop_index: bool = True) -> pandas.DataFrame:
    """
    Sort table of genomic intervals so that
    a) contigs are in canonical order and all the intervals in a contig are sequential in the table.
    b) within a contig, intervals have non-decreasing "begin"
    c) within a contig, intervals with the same "begin" have non-decreasing "end"
    The "contig" column of the returned table is an ordered categorical.
    Args:
        intervals_df: pandas.DataFrame
            table of genomic intervals (with columns "contig", "begin", "end")
        drop_index: bool (Default=True)
            if True, replace old index with an index from 0 to num_intervals - 1
            if False, keep old index (which will now be out of order)
    Returns:
        intervals: pandas.DataFrame
            sorted table of genomic intervals
    """
    contigs = sorted(intervals_df[Keys.contig].astype(str).unique(), key=contig_sort_key)
    intervals_df = intervals_df.assign(**{
        Keys.contig: pandas.Categorical(intervals_df[Keys.contig].astype(str).values, categories=contigs, ordered=True)
    })
    intervals_df = intervals_df.sort_values([Keys.contig, Keys.begin, Keys.end], kind="stable")
    if drop_index:
        intervals_df = intervals_df.reset_index(drop=True)
    return intervals_df


def check_required_columns(df: pandas.DataFrame, required_columns: Iterable[str], context: str):
    """ Raise DataShapeError if any required column is absent from df """
    missing_columns = [column for column in required_columns if column not in df.columns]
    if missing_columns:
        raise DataShapeError(f"{context} is missing required column(s): {','.join(missing_columns)}")


def tsv_to_pandas(
        data_file: Text,
        columns: Union[Sequence[Text], Mapping[Text, Text], None] = None,
        has_header: bool = True,
        header_start: str = "",
        encoding: str = Default.encoding,
        log_progress: bool = Default.log_progress,
        **kwargs
) -> pandas.DataFrame:
    f"""
    Load dataframe from tab-delimited file. The file may be plain text, gzipped, or bgzipped; all are read through
    pysam.BGZFile. Every column is loaded as str, and callers convert numeric columns.
    Args:
        data_file: Text
            Full path to file
        columns: Mapping[str, str], Sequence[str], or None (Default = None)
            If a Mapping: rename any column names that are keys in this mapping.
            If a Sequence: only valid for files without a header, name the leading columns with this sequence and drop
            any further columns.
        has_header: bool (Default=True)
            If True, the first line (after header_start, if any) holds the column names.
            If False, lines starting with '#' are treated as comments and skipped.
        header_start: str (Default="")
            If has_header is True and header_start is non-empty, the file must begin with this string.
        encoding: str (Default={Default.encoding})
            Encoding to use for file
        log_progress: bool (Default={Default.log_progress})
            Log file name on loading file
        **kwargs: passed to pandas.read_csv
    Returns:
        df: pandas.DataFrame
            Table of data.
    """
    if not os.path.isfile(data_file):
        raise ConfigurationError(f"{data_file} does not exist")
    if log_progress:
        logging.info(f"Loading {data_file}")

    # it is much faster to handle the header manually, then load remaining file into buffer and call pandas.read_csv
    # on the buffer than it is to load line-by-line with python code.
    header_bytes = header_start.encode(encoding) if has_header else b""
    buffer = io.StringIO()
    with pysam.BGZFile(data_file, "rb") as f_in:
        file_start = f_in.read(len(header_bytes)) if header_bytes else b""
        if header_bytes and file_start != header_bytes:
            raise DataShapeError(f"{data_file} does not start with {header_start} header")
        try:
            buffer.write(f_in.read().decode(encoding))
        except UnicodeDecodeError as decode_error:
            raise DataShapeError(f"{data_file} is not valid {encoding} text: {decode_error}") from decode_error
    buffer.seek(0)

    try:
        if has_header:
            df = pandas.read_csv(buffer, sep='\t', dtype=str, engine='c', **kwargs)
        else:
            df = pandas.read_csv(buffer, sep='\t', dtype=str, engine='c', header=None, comment='#', **kwargs)
    except pandas.errors.EmptyDataError:
        raise DataShapeError(f"{data_file} is empty")
    except pandas.errors.ParserError as parser_error:
        raise DataShapeError(f"error parsing {data_file}: {parser_error}") from parser_error

    if isinstance(columns, Mapping):
        df = df.rename(columns=dict(columns))
    elif columns is not None:
        if has_header:
            raise ValueError("A sequence of column names can only be applied to a file without header")
        if df.shape[1] < len(columns):
            raise DataShapeError(f"{data_file} has {df.shape[1]} columns, expected at least {len(columns)}")
        df = df.iloc[:, :len(columns)]
        df.columns = list(columns)
    return df


def pandas_to_tsv(
        data_file: Text,
        df: pandas.DataFrame,
        write_index: bool = False,
        write_header: bool = True,
        header_start: str = Default.header_start,
        na_rep: str = Default.na_rep,
        encoding: str = Default.encoding
):
    f"""
    Save pandas DataFrame into tab-delimited file, bgzip compressed.
    Args:
        data_file: Text
            Full path to save file
        df: pandas.DataFrame
            Table of data.
        write_index: bool (Default = False)
            If true, write the DataFrame index as the first output column, if False, omit the index
        write_header: bool (Default = True)
            If true, begin save file with header of column names
        header_start: str (Default={Default.header_start})
            Start header with this string.
        na_rep: str (Default={Default.na_rep})
            String written for missing values (e.g. masked bins).
        encoding: str (Default = {Default.encoding}
            Encoding to use when writing strings.
    """
    if isinstance(df.columns, pandas.MultiIndex):
        raise ValueError("Unable to output multi-index columns as TSV. Manually flatten the column labels first.")
    with pysam.BGZFile(data_file, "wb") as f_out:
        if write_header and header_start:
            f_out.write(header_start.encode(encoding))
        f_out.write(df.to_csv(sep='\t', index=write_index, header=write_header, na_rep=na_rep).encode(encoding))


def _to_integer(series: pandas.Series, context: str) -> pandas.Series:
    """ Convert str column to int64, raising DataShapeError on missing or non-integer values """
    values = pandas.to_numeric(series, errors="coerce")
    is_bad = values.isnull() | (values != numpy.round(values))
    if is_bad.any():
        bad_values = series[is_bad].head(5).tolist()
        raise DataShapeError(f"{context} has {is_bad.sum()} missing or non-integer value(s), e.g. {bad_values}")
    return values.astype(Default.int_type)


def load_chrom_sizes(chrom_sizes_file: Text, autosomes_only: bool = True) -> pandas.Series:
    """
    Load chromosome size table. Accepts BED-like rows (chromosome, 0, length) or two-column (chromosome, length) rows,
    without a header.
    Args:
        chrom_sizes_file: Text
            Path to chromosome sizes file
        autosomes_only: bool (Default=True)
            If True, drop sex / mitochondrial / alt contigs
    Returns:
        chrom_sizes: pandas.Series
            Chromosome length indexed by contig, in canonical contig order
    """
    raw = tsv_to_pandas(chrom_sizes_file, has_header=False)
    if raw.shape[1] < 2:
        raise ConfigurationError(f"{chrom_sizes_file} must have at least 2 columns")
    contigs = raw.iloc[:, 0].astype(str)
    if raw.shape[1] >= 3:
        begins = _to_integer(raw.iloc[:, 1], f"{chrom_sizes_file} start column")
        if (begins != 0).any():
            raise ConfigurationError(f"{chrom_sizes_file}: chromosome intervals must start at 0")
        lengths = _to_integer(raw.iloc[:, 2], f"{chrom_sizes_file} end column")
    else:
        lengths = _to_integer(raw.iloc[:, 1], f"{chrom_sizes_file} length column")
    chrom_sizes = pandas.Series(lengths.values, index=contigs.values, name=Keys.length)
    chrom_sizes.index.name = Keys.contig
    if chrom_sizes.index.has_duplicates:
        duplicated = chrom_sizes.index[chrom_sizes.index.duplicated()].unique().tolist()
        raise ConfigurationError(f"{chrom_sizes_file} lists contig(s) more than once: {duplicated}")
    if autosomes_only:
        chrom_sizes = chrom_sizes.loc[[is_autosome(contig) for contig in chrom_sizes.index]]
    return chrom_sizes.loc[sorted(chrom_sizes.index, key=contig_sort_key)]


def load_uncallable_regions(uncallable_file: Text, autosomes_only: bool = True) -> pandas.DataFrame:
    """
    Load uncallable regions from a BED file (chromosome, start, end, [ignored extra columns]) without header.
    """
    regions = tsv_to_pandas(uncallable_file, columns=Default.bed_columns, has_header=False)
    regions[Keys.contig] = regions[Keys.contig].astype(str)
    for key in (Keys.begin, Keys.end):
        regions[key] = _to_integer(regions[key], f"{uncallable_file} {key} column")
    if autosomes_only:
        regions = regions.loc[regions[Keys.contig].map(is_autosome).astype(bool)]
    return sort_intervals_table(regions)


def get_column_mapping(
        available_columns: Collection[str],
        column_candidates: Mapping[str, Sequence[str]] = Default.breakpoint_column_candidates,
) -> Dict[str, str]:
    """
    For each internal key, find the first candidate column name present in available_columns.
    Args:
        available_columns: Collection[str]
            Column names in a loaded table
        column_candidates: Mapping[str, Sequence[str]]
            Internal key -> candidate names, in priority order
    Returns:
        column_mapping: Dict[str, str]
            File column name -> internal key, for every key with a matching candidate
    """
    column_mapping = {}
    for key, candidates in column_candidates.items():
        if isinstance(candidates, str):
            candidates = (candidates,)
        for candidate in candidates:
            if candidate in available_columns:
                column_mapping[candidate] = key
                break
    return column_mapping


def load_column_candidates(columns_json: Optional[Text]) -> Mapping[str, Sequence[str]]:
    """
    Load overrides for the breakpoint column candidates from a JSON mapping of internal key to a column name or list of
    column names. Keys not in the JSON keep their default candidates.
    """
    if columns_json is None:
        return Default.breakpoint_column_candidates
    if not os.path.isfile(columns_json):
        raise ConfigurationError(f"columns json ({columns_json}) is not a path to a valid file")
    with open(columns_json, 'r') as f_in:
        overrides = json.load(f_in)
    unknown_keys = set(overrides).difference(Default.breakpoint_column_candidates)
    if unknown_keys:
        raise ConfigurationError(f"columns json ({columns_json}) has unknown key(s): {','.join(sorted(unknown_keys))}")
    return MappingProxyType({
        **Default.breakpoint_column_candidates,
        **{key: (value,) if isinstance(value, str) else tuple(value) for key, value in overrides.items()}
    })


def check_breakpoints(breakpoints: pandas.DataFrame, context: str = "breakpoints") -> pandas.DataFrame:
    """
    Validate the shape of a breakpoint table and coerce its column types: "sample_id" and "contig" as str, "coordinate"
    as int64.
    Args:
        breakpoints: pandas.DataFrame
            Table of breakpoints with columns "sample_id", "contig", "coordinate"
        context: str
            Description of the table for error messages
    Returns:
        breakpoints: pandas.DataFrame
            Table with only the required columns, in canonical types
    """
    required_columns = (Keys.sample_id, Keys.contig, Keys.coordinate)
    check_required_columns(breakpoints, required_columns, context)
    if breakpoints[Keys.sample_id].isnull().any() or breakpoints[Keys.contig].isnull().any():
        raise DataShapeError(f"{context} has missing sample IDs or contigs")
    if pandas.api.types.is_integer_dtype(breakpoints[Keys.coordinate]):
        coordinates = breakpoints[Keys.coordinate].astype(Default.int_type)
    else:
        coordinates = _to_integer(breakpoints[Keys.coordinate], f"{context} {Keys.coordinate} column")
    return pandas.DataFrame({
        Keys.sample_id: breakpoints[Keys.sample_id].astype(str).values,
        Keys.contig: breakpoints[Keys.contig].astype(str).values,
        Keys.coordinate: coordinates.values,
    }, index=breakpoints.index)


def load_breakpoints(
        breakpoints_file: Text,
        column_candidates: Mapping[str, Sequence[str]] = Default.breakpoint_column_candidates
) -> pandas.DataFrame:
    """
    Load a breakpoint table (with header line) and map its columns onto "sample_id", "contig", "coordinate".
    Args:
        breakpoints_file: Text
            Path to tab-delimited breakpoint table
        column_candidates: Mapping[str, Sequence[str]]
            Internal key -> candidate column names, in priority order
    Returns:
        breakpoints: pandas.DataFrame
            Table of breakpoints
    """
    raw = tsv_to_pandas(breakpoints_file)
    # tolerate a '#' in front of the header line
    raw.columns = [column.lstrip('#') for column in raw.columns]
    column_mapping = get_column_mapping(raw.columns, column_candidates)
    # keep only the mapped columns, an unmapped column may already carry an internal name
    return check_breakpoints(raw[list(column_mapping)].rename(columns=column_mapping), context=breakpoints_file)


def load_sample_metadata(
        metadata_file: Text,
        histology_column: str = Default.histology_column,
        experimental_strategy_column: str = Default.experimental_strategy_column,
        sample_candidates: Sequence[str] = Default.metadata_sample_candidates
) -> pandas.DataFrame:
    f"""
    Load sample metadata, keeping only the sample ID, histology label, and experimental strategy.
    Args:
        metadata_file: Text
            Path to tab-delimited metadata table with header line
        histology_column: str (Default={Default.histology_column})
            Column holding the histology group label
        experimental_strategy_column: str (Default={Default.experimental_strategy_column})
            Column holding the experimental strategy. If absent, every sample is kept by strategy filters.
        sample_candidates: Sequence[str]
            Candidate names of the sample ID column, in priority order
    Returns:
        metadata: pandas.DataFrame
            Table indexed by sample_id with columns "histology" and "experimental_strategy" (missing values are NaN)
    """
    raw = tsv_to_pandas(metadata_file)
    sample_column = next((column for column in sample_candidates if column in raw.columns), None)
    if sample_column is None:
        raise DataShapeError(f"{metadata_file} has no sample ID column, tried: {','.join(sample_candidates)}")
    check_required_columns(raw, (histology_column,), metadata_file)
    metadata = pandas.DataFrame({
        Keys.histology: raw[histology_column].values,
        Keys.experimental_strategy: raw[experimental_strategy_column].values
        if experimental_strategy_column in raw.columns else numpy.nan
    }, index=pandas.Index(raw[sample_column].astype(str).values, name=Keys.sample_id))
    if metadata.index.has_duplicates:
        # a biospecimen may appear on several rows; the first row wins
        metadata = metadata.loc[~metadata.index.duplicated(keep="first")]
    return metadata

