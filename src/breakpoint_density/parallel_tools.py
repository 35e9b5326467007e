import os
import random
import string
import logging
import tempfile
import warnings
# noinspection PyUnresolvedReferences
import multiprocessing
import multiprocessing.pool
from typing import Callable, Union, Optional, Sized, Iterator, TypeVar, Collection, Iterable

import dill
import numpy
from tqdm.auto import tqdm as tqdm
from tqdm import TqdmWarning

from breakpoint_density import common

Numeric = Union[int, float, numpy.integer, numpy.floating]
TaskType = TypeVar("TaskType")
OutputType = TypeVar("OutputType")
FuncType = Callable[..., OutputType]

tqdm.monitor_interval = 0
# func, args and kwargs of active maps, loaded lazily in each worker
_pool_func_args = dict()
_pool_key_len = 10


class Default:
    update_time = 0.5  # seconds
    num_chunk_divs = 20  # chunks per worker per job
    n_jobs = -1  # by default, use all available processes


def _func_name(func: Callable) -> str:
    return getattr(func, "__name__", type(func).__name__)


def pmap(
        pool: Optional[multiprocessing.pool.Pool],
        func: FuncType,
        tasks: Union[Iterable[TaskType], Iterator[TaskType]],
        num_tasks: Optional[int] = None,
        task_sizes: Optional[Collection[float]] = None,
        description: str = 'parallel tasks',
        update_time: Optional[float] = Default.update_time,
        args: Optional[Collection] = None,
        kwargs: Optional[dict] = None,
        chunksize: Optional[int] = None,
        num_chunk_divs: int = Default.num_chunk_divs
) -> Iterator[OutputType]:
    """
    Execute func on each task in tasks, using parallel pool, and yield the results in task order. Progress is displayed
    using tqdm.
    Typical invocation:
      # NOTE: using 'spawn' context saves a lot of memory
      with multiprocessing.get_context('spawn').Pool(processes=n_jobs) as pool:
          results = list(pmap(pool, func, tasks))
      assert results == [func(task) for task in tasks]
    Args:
        pool: multiprocessing.pool.Pool or None
            If None, evaluate serially in this process
        func: Callable
            Function to execute on tasks. Must be picklable by dill (e.g. a module-level function).
        tasks: Iterable
            Each task is the first argument passed to func
        num_tasks: int (Default=None)
            Number of tasks, used for displaying progress. If None, it will be set to len(tasks) if available.
        task_sizes: Collection[float] (Default=None)
            Task sizes for displaying progress. If empty, each task will be assigned size 1
        description: str (Default='parallel tasks')
            Descriptive text for progress bar
        update_time: float (Default=0.5)
            Minimum time in seconds for progress bar updates. If None or inf, progress will not be displayed.
        args: Collection (Default=None)
            Additional args to pass to func. Constant across tasks:
            results = [func(task, *args) for task in tasks]
        kwargs: dict (Default=None)
            kwargs to pass to func. Constant across tasks:
            results = [func(task, **kwargs) for task in tasks]
        chunksize: int (Default=None)
            Number of tasks to pass to each worker in a block. If None, use num_chunk_divs chunks per worker, or
            chunksize = 1, whichever is larger.
        num_chunk_divs: int (Default=20)
            Number of chunks per worker
    Yields:
        result: Any
            func(task, *args, **kwargs), in the order of tasks
    """
    args = tuple() if args is None else tuple(args)
    kwargs = dict() if kwargs is None else kwargs
    task_sizes = tuple() if task_sizes is None else tuple(task_sizes)
    if num_tasks is None:
        if isinstance(tasks, Sized):
            num_tasks = len(tasks)
        elif task_sizes:
            num_tasks = len(task_sizes)
    total = sum(task_sizes) if task_sizes else num_tasks
    disable = update_time is None or update_time >= float('inf')
    num_tasks_str = 'an unknown number of' if num_tasks is None else f"{num_tasks}"

    if pool is None:
        logging.info(f"Executing {_func_name(func)} on {num_tasks_str} tasks serially")
        result_gen = ((index, func(task, *args, **kwargs)) for index, task in enumerate(tasks))
    else:
        # noinspection PyProtectedMember
        num_workers = len(pool._pool)
        if chunksize is None or chunksize < 1:
            chunksize = 1 if num_tasks is None else max(num_tasks // (num_chunk_divs * num_workers), 1)
        logging.info(f"Executing {_func_name(func)} on {num_tasks_str} tasks (chunksize={chunksize}) with "
                     f"{num_workers} parallel workers")
        # translate func so that results can be re-sorted into task order
        func = _UnorderedMapTranslator(func, args, kwargs)
        result_gen = pool.imap_unordered(func, enumerate(tasks), chunksize=chunksize)

    next_index = 0
    waiting_results = dict()
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=TqdmWarning)
        with tqdm(total=total, disable=disable, mininterval=update_time, maxinterval=float('inf'), smoothing=0,
                  desc=description) as progress:
            for index, result in result_gen:
                progress.update(task_sizes[index] if task_sizes else 1)
                if index != next_index:
                    # this result is not wanted yet. store for later
                    waiting_results[index] = result
                    continue
                yield result
                next_index += 1
                while next_index in waiting_results:
                    yield waiting_results.pop(next_index)
                    next_index += 1


class _UnorderedMapTranslator(object):
    """
    Wraps func so that each worker loads (func, args, kwargs) from a dill file once, then tags results with the index
    of their task.
    """
    def __init__(self, func, args=None, kwargs=None):
        self._master_pid = os.getpid()
        self._pickle_args(func, tuple() if args is None else args, dict() if kwargs is None else kwargs)

    def __call__(self, indexed_task):
        if self._key not in _pool_func_args:
            self._load_func_args()
        func, args, kwargs = _pool_func_args[self._key]
        index, task = indexed_task
        return index, func(task, *args, **kwargs)

    def __del__(self):
        if os.getpid() == self._master_pid:
            _pool_func_args.pop(self._key, None)
            try:
                os.remove(self._key_file())
            except FileNotFoundError:
                pass

    def _pickle_args(self, func, args, kwargs):
        self._key = ''.join(
            random.SystemRandom().choices(string.ascii_letters + string.digits, k=_pool_key_len)
        )
        _pool_func_args[self._key] = (func, args, kwargs)
        with open(self._key_file(), 'wb') as f_out:
            dill.dump((func, args, kwargs), f_out)

    def _load_func_args(self):
        with open(self._key_file(), 'rb') as f_in:
            _pool_func_args[self._key] = dill.load(f_in)

    def _key_file(self) -> str:
        return os.path.join(tempfile.gettempdir(), f"breakpoint_density_{self._key}.dill")


Pool = multiprocessing.get_context('spawn').Pool


def parmap(
        func: FuncType,
        tasks: Union[Iterable[TaskType], Iterator[TaskType]],
        num_tasks: Optional[int] = None,
        task_sizes: Optional[Collection[float]] = None,
        description: str = 'parallel tasks',
        update_time: Optional[float] = Default.update_time,
        args: Optional[Collection] = None,
        kwargs: Optional[dict] = None,
        chunksize: Optional[int] = None,
        num_chunk_divs: int = Default.num_chunk_divs,
        n_jobs: Optional[int] = Default.n_jobs,
        required_worker_memory: Optional[Numeric] = None,
        required_master_memory: Optional[Numeric] = None,
        require_physical_cpus: bool = False
) -> Iterator[OutputType]:
    """
    Like pmap, but creates (and closes) its own spawn-context pool, sized with common.num_jobs_to_use. With a single
    job (or a single task) everything runs serially in this process.
    Typical invocation:
      results = list(parmap(func, tasks, n_jobs=4))
      assert results == [func(task) for task in tasks]
    Args:
        func, tasks, num_tasks, task_sizes, description, update_time, args, kwargs, chunksize, num_chunk_divs:
            see pmap
        n_jobs: int or None (Default=-1)
            Number of parallel workers requested. If None or negative, use all available cpus.
        required_worker_memory: float (Default=None)
            Memory (GiB) needed by each worker process. Used to cap the number of workers.
        required_master_memory: float (Default=None)
            Memory (GiB) needed by master process. Used to cap the number of workers.
        require_physical_cpus: bool (Default=False)
            If True, limit number of jobs to number of physical cores in system, not number of hyperthreads.
    Yields:
        result: Any
            func(task, *args, **kwargs), in the order of tasks
    """
    n_jobs = common.num_jobs_to_use(
        n_jobs,
        required_master_memory=required_master_memory,
        required_worker_memory=required_worker_memory,
        require_physical_cpus=require_physical_cpus
    )
    if num_tasks is None:
        if isinstance(tasks, Sized):
            num_tasks = len(tasks)
        elif task_sizes is not None and isinstance(task_sizes, Sized):
            num_tasks = len(task_sizes)
    if num_tasks is not None:
        n_jobs = min(n_jobs, num_tasks)

    map_kwargs = dict(
        func=func, tasks=tasks, num_tasks=num_tasks, task_sizes=task_sizes, description=description,
        update_time=update_time, args=args, kwargs=kwargs, chunksize=chunksize, num_chunk_divs=num_chunk_divs
    )
    if n_jobs <= 1:
        yield from pmap(pool=None, **map_kwargs)
    else:
        # syntactic sugar causes problems with pycov
        # with Pool(processes=n_jobs) as pool:
        pool = Pool(processes=n_jobs)
        try:
            yield from pmap(pool=pool, **map_kwargs)
        finally:
            pool.close()
            pool.join()
