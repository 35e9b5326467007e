import warnings
import numpy
import pandas
import pytest

from breakpoint_density import break_density, genomics_io
from breakpoint_density.break_density import BinningContext
from breakpoint_density.common import ConfigurationError, DataShapeError, ErrorAction, InvalidSampleError
import common_test_utils


class Default:
    bin_size = 1_000_000
    perc_cutoff = 0.75
    example_chrom_sizes = {"1": 2_500_000}
    group_chrom_sizes = {"1": 5_000_000}
    uncallable_end = 900_000
    num_random_trials = 10
    num_random_breakpoints = 200


class Keys:
    contig = genomics_io.Keys.contig
    bin_index = genomics_io.Keys.bin_index
    begin = genomics_io.Keys.begin
    end = genomics_io.Keys.end
    callable_fraction = genomics_io.Keys.callable_fraction
    count = genomics_io.Keys.count
    sample_id = genomics_io.Keys.sample_id
    coordinate = genomics_io.Keys.coordinate


def _breakpoints(rows) -> pandas.DataFrame:
    return genomics_io.check_breakpoints(
        pandas.DataFrame(rows, columns=[Keys.sample_id, Keys.contig, Keys.coordinate])
    )


def _uncallable(chrom_sizes) -> pandas.DataFrame:
    """ first 900 kb of each chromosome is uncallable """
    return pandas.DataFrame({
        Keys.contig: list(chrom_sizes),
        Keys.begin: 0,
        Keys.end: Default.uncallable_end
    })


@pytest.fixture(scope="module")
def example_context() -> BinningContext:
    # bins [0,1e6) [1e6,2e6) [2e6,2.5e6), first bin is 10% callable
    return BinningContext.build(
        Default.example_chrom_sizes, _uncallable(Default.example_chrom_sizes), bin_size=Default.bin_size,
        perc_cutoff=Default.perc_cutoff
    )


@pytest.fixture(scope="module")
def group_context() -> BinningContext:
    return BinningContext.build(
        Default.group_chrom_sizes, _uncallable(Default.group_chrom_sizes), bin_size=Default.bin_size
    )


def test_binning_context(example_context: BinningContext):
    assert example_context.bin_size == Default.bin_size
    assert example_context.perc_cutoff == Default.perc_cutoff
    assert example_context.num_bins == 3
    assert example_context.contigs == ("1",)
    assert numpy.allclose(example_context.callable_fraction.values, [0.1, 1.0, 1.0])
    assert example_context.is_masked().tolist() == [True, False, False]
    assert example_context.is_masked(0.05).tolist() == [False, False, False]
    bins_table = example_context.bins_table()
    assert list(bins_table.columns) == [Keys.contig, Keys.bin_index, Keys.begin, Keys.end, Keys.callable_fraction]
    # the table is a copy, the context keeps its own bins
    assert Keys.callable_fraction not in example_context.bins.columns
    with pytest.raises(AttributeError):
        # noinspection PyPropertyAccess
        example_context.bin_size = 10


def test_binning_context_without_uncallable_regions():
    context = BinningContext.build({"1": 250, "2": 100}, bin_size=100)
    assert context.num_bins == 4
    assert (context.callable_fraction == 1.0).all()
    assert not context.is_masked().any()


@pytest.mark.parametrize("perc_cutoff", [-0.1, 1.5, "most"])
def test_binning_context_bad_cutoff(perc_cutoff):
    with pytest.raises(ConfigurationError):
        BinningContext.build(Default.example_chrom_sizes, bin_size=Default.bin_size, perc_cutoff=perc_cutoff)


def test_example_density(example_context: BinningContext):
    breakpoints = _breakpoints([("S1", "1", 1_000_001)])
    density = break_density.break_density_vector(breakpoints, "S1", example_context)
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([None, 1, 0]), "example")
    assert density.name == "S1"


def test_masking_takes_precedence(example_context: BinningContext):
    # two breakpoints land in the low-callability bin, it is still NA. A callable bin without breakpoints is 0.
    breakpoints = _breakpoints([("S1", "1", 10), ("S1", "1", 500_000), ("S1", "1", 2_400_000)])
    density = break_density.break_density_vector(breakpoints, "S1", example_context)
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([None, 0, 1]), "masked")
    # lowering the cutoff reveals the count
    density = break_density.break_density_vector(breakpoints, "S1", example_context, perc_cutoff=0.05)
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([2, 0, 1]), "low cutoff")
    with pytest.raises(ConfigurationError):
        break_density.break_density_vector(breakpoints, "S1", example_context, perc_cutoff=2.0)


def test_out_of_range_breakpoints(example_context: BinningContext):
    breakpoints = _breakpoints([
        ("S1", "1", 2_500_000),  # exactly at chromosome end: clamped into last bin
        ("S1", "1", 1_999_999),
        ("S1", "1", 2_000_000),
        ("S1", "1", 2_500_001),  # past end: dropped
        ("S1", "1", -1),         # negative: dropped
        ("S1", "X", 1_500_000),  # contig without bins: dropped
    ])
    density = break_density.break_density_vector(breakpoints, "S1", example_context)
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([None, 1, 2]), "out of range")


def test_break_density_table(example_context: BinningContext):
    breakpoints = _breakpoints([("S1", "1", 1_000_001), ("S2", "1", 2_100_000)])
    table = break_density.break_density(breakpoints, "S1", example_context)
    assert list(table.columns) == [
        Keys.contig, Keys.bin_index, Keys.begin, Keys.end, Keys.callable_fraction, Keys.count
    ]
    assert table[Keys.count].dtype == pandas.Int64Dtype()
    assert table[Keys.begin].tolist() == [0, 1_000_000, 2_000_000]
    assert numpy.allclose(table[Keys.callable_fraction], [0.1, 1.0, 1.0])
    vector = break_density.break_density_vector(breakpoints, "S1", example_context)
    common_test_utils.assert_series_equal(table[Keys.count], vector, "table vs vector", check_index=True)


def test_group_density(group_context: BinningContext):
    breakpoints = _breakpoints([
        ("S1", "1", 1_500_000),
        ("S2", "1", 3_200_000),
        ("S3", "1", 4_100_000),  # not in group
    ])
    density = break_density.break_density_vector(breakpoints, ["S1", "S2"], group_context, name="Group A")
    common_test_utils.assert_series_equal(
        density, common_test_utils.int64_counts([None, 1, 0, 1, 0]), "group"
    )
    assert density.name == "Group A"
    # a requested sample may be absent as long as another one is present
    density = break_density.break_density_vector(breakpoints, ("S1", "absent"), group_context)
    common_test_utils.assert_series_equal(
        density, common_test_utils.int64_counts([None, 1, 0, 0, 0]), "partially absent group"
    )
    assert density.name is None


def test_idempotence(group_context: BinningContext):
    breakpoints = _breakpoints([("S1", "1", 1_500_000), ("S1", "1", 1_600_000), ("S2", "1", 10)])
    original = breakpoints.copy()
    first = break_density.break_density(breakpoints, ["S1", "S2"], group_context)
    second = break_density.break_density(breakpoints, ["S1", "S2"], group_context)
    common_test_utils.assert_dataframes_equal(first, second, "repeat call")
    common_test_utils.assert_dataframes_equal(breakpoints, original, "input unchanged")
    assert first[Keys.count].tolist()[1] == 2


def test_sum_property(num_random_trials: int = Default.num_random_trials):
    chrom_sizes = {"1": 10_000, "2": 7_500, "3": 333}
    context = BinningContext.build(chrom_sizes, bin_size=1_000)
    for _ in range(num_random_trials):
        contigs = numpy.random.choice(list(chrom_sizes), size=Default.num_random_breakpoints)
        coordinates = [numpy.random.randint(0, chrom_sizes[contig] + 1) for contig in contigs]
        samples = numpy.random.choice(["S1", "S2"], size=Default.num_random_breakpoints)
        breakpoints = _breakpoints(list(zip(samples, contigs, coordinates)))
        table = break_density.break_density(breakpoints, "S1", context)
        assert not table[Keys.count].isnull().any()
        for contig in chrom_sizes:
            expected = ((breakpoints[Keys.sample_id] == "S1") & (breakpoints[Keys.contig] == contig)).sum()
            assert table.loc[table[Keys.contig] == contig, Keys.count].sum() == expected


def test_missing_samples(example_context: BinningContext):
    breakpoints = _breakpoints([("S1", "1", 1_000_001)])
    with pytest.raises(InvalidSampleError):
        break_density.break_density_vector(breakpoints, "absent", example_context)
    with pytest.raises(InvalidSampleError):
        break_density.break_density(breakpoints, ["absent", "also absent"], example_context)

    with pytest.warns(UserWarning, match="absent"):
        density = break_density.break_density_vector(
            breakpoints, "absent", example_context, missing_samples_action=ErrorAction.Warn
        )
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([None, 0, 0]), "warn")

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        density = break_density.break_density_vector(
            breakpoints, "absent", example_context, missing_samples_action=ErrorAction.Ignore
        )
    common_test_utils.assert_series_equal(density, common_test_utils.int64_counts([None, 0, 0]), "ignore")

    # an empty request is always an error
    with pytest.raises(InvalidSampleError):
        break_density.break_density_vector(
            breakpoints, [], example_context, missing_samples_action=ErrorAction.Ignore
        )


def test_bad_breakpoint_tables(example_context: BinningContext):
    with pytest.raises(DataShapeError):
        break_density.break_density_vector(
            pandas.DataFrame({Keys.sample_id: ["S1"], Keys.contig: ["1"]}), "S1", example_context
        )
    with pytest.raises(DataShapeError):
        break_density.break_density_vector(
            pandas.DataFrame({Keys.sample_id: ["S1"], Keys.contig: ["1"], Keys.coordinate: [1.5]}), "S1",
            example_context
        )


def test_all_break_density(example_context: BinningContext):
    datasets = {
        "intersection": _breakpoints([("S1", "1", 1_000_001)]),
        "cnv": _breakpoints([("S1", "1", 2_000_001), ("S1", "1", 2_000_002)]),
        "sv": _breakpoints([("S1", "1", 1_500_000), ("S2", "1", 1_500_000)]),
    }
    tables = break_density.all_break_density(datasets, "S1", example_context)
    vectors = break_density.all_break_density_vectors(datasets, "S1", example_context)
    assert list(tables) == list(datasets)
    assert list(vectors) == list(datasets)
    for dataset_name, breakpoints in datasets.items():
        common_test_utils.assert_dataframes_equal(
            tables[dataset_name], break_density.break_density(breakpoints, "S1", example_context), dataset_name
        )
        common_test_utils.assert_series_equal(vectors[dataset_name], tables[dataset_name][Keys.count], dataset_name)
    assert vectors["cnv"].tolist()[2] == 2

    # absent from one dataset: the error propagates
    with pytest.raises(InvalidSampleError):
        break_density.all_break_density_vectors(datasets, "S2", example_context)
