#!/usr/bin/env python

import time
import numpy
import numpy.random
import pytest
import random
import string

from typing import Iterator

from breakpoint_density import common, parallel_tools


Task = numpy.ndarray


@pytest.fixture(scope='session')
def pool(n_jobs=max(2, common.num_physical_cpus)):
    """
    yield parallel pool for executing tests
    """
    with parallel_tools.Pool(processes=n_jobs) as par_pool:
        yield par_pool


def _make_tasks(num_tasks: int = 500) -> Iterator[Task]:
    """
    generate random tasks of varying size
    """
    for _ in range(num_tasks):
        yield numpy.random.randn(numpy.random.randint(3, 10))


def _get_task_size(task: Task) -> float:
    """
    Return estimate of task difficulty
    """
    return round(sum(abs(task)), ndigits=6)


def _task_func(v, extra_val_1="extra 1", extra_val_2="extra 2", sleep_time=None) -> str:
    """
    evaluate input values returning string
    principle virtues of this function are:
     1) simple
     2) fairly unique mapping from inputs to outputs
     3) if sleep_time is not None, should be possible to measure
        speed-up from parallel execution
    """
    if sleep_time is not None:
        time.sleep(sleep_time * sum(abs(v)))
    return "%s, %s : %f" % (extra_val_1, extra_val_2, sum(abs(v)))


def _random_word(word_len=10):
    """
    Generate a random "word" of printable characters
    """
    return ''.join(random.choices(string.printable, k=word_len))


def _run_accuracy_trial(pool, args=None, kwargs=None, chunksize=None):
    """
    For given set of input parameters test that parallel execution
    returns correct results by comparing to serial
    """
    tasks = list(_make_tasks())
    serial_results = [_task_func(task, *(args or []), **(kwargs or {})) for task in tasks]
    parallel_results = list(parallel_tools.pmap(
        pool, _task_func, tasks, args=args, kwargs=kwargs, update_time=None, chunksize=chunksize
    ))
    assert parallel_results == serial_results


def test_accuracy(pool):
    """
    Test accuracy of parallel execution under a variety of use cases
    """
    _run_accuracy_trial(pool)
    _run_accuracy_trial(pool, args=[_random_word()])
    _run_accuracy_trial(pool, kwargs={'extra_val_2': _random_word()})
    _run_accuracy_trial(pool, args=[_random_word()], kwargs={'extra_val_2': _random_word()})
    # test with chunksize > 1
    _run_accuracy_trial(pool, chunksize=10)
    # test with chunksize == 1
    _run_accuracy_trial(pool, chunksize=1)


def test_serial_pmap():
    tasks = list(_make_tasks(num_tasks=20))
    # generator input, no known length
    results = list(parallel_tools.pmap(
        None, _task_func, (task for task in tasks), kwargs={'extra_val_1': "serial"}, update_time=None
    ))
    assert results == [_task_func(task, extra_val_1="serial") for task in tasks]


def test_parmap():
    tasks = list(_make_tasks(num_tasks=50))
    task_sizes = [_get_task_size(task) for task in tasks]
    expected = [_task_func(task, "arg") for task in tasks]
    assert list(parallel_tools.parmap(_task_func, tasks, args=("arg",), n_jobs=1, update_time=None)) == expected
    assert list(parallel_tools.parmap(
        _task_func, tasks, task_sizes=task_sizes, args=("arg",), n_jobs=2, update_time=None
    )) == expected
    assert list(parallel_tools.parmap(_task_func, [], n_jobs=2, update_time=None)) == []


def test_progress_bar(pool, capsys):
    """
    Check that the progress bar can draw with task sizes while results stay in order
    """
    tasks = list(_make_tasks(num_tasks=100))
    task_sizes = [_get_task_size(task) for task in tasks]
    serial_results = [_task_func(task) for task in tasks]
    with capsys.disabled():
        parallel_results = list(parallel_tools.pmap(
            pool, _task_func, tasks, task_sizes=task_sizes, kwargs={'sleep_time': 1.0e-4}, update_time=0.0,
            description='This should draw a progress bar'
        ))
    assert serial_results == parallel_results
