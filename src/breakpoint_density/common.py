import sys
import os
import types
import warnings
import subprocess
import multiprocessing
from enum import Enum
from typing import Text, Union, Optional, Type

import numpy
import psutil


Numeric = Union[int, float, numpy.integer, numpy.floating]


class BreakpointDensityError(ValueError):
    """ Base class for problems detected while computing breakpoint densities """


class ConfigurationError(BreakpointDensityError):
    """ Invalid bin size, cutoff, chromosome table or run configuration. Fatal for the whole run. """


class InvalidSampleError(BreakpointDensityError):
    """ Requested sample(s) are absent from a breakpoint dataset. Fatal only for the affected sample / group. """


class DataShapeError(BreakpointDensityError):
    """ Malformed input table (e.g. missing required columns). Fatal only for the affected dataset. """


class ErrorAction(Enum):
    """ Simple Enum to control behavior when a problem is identified """
    Ignore = 0
    Warn = 1
    RaiseException = 2

    def handle_error(self, message: str, exception_type: Type[Exception] = ValueError):
        if self == ErrorAction.Warn:
            warnings.warn(message, stacklevel=2)
        elif self == ErrorAction.RaiseException:
            # remove last frame from traceback so that the exception points to the actual problem, and not this
            # wrapper
            # noinspection PyUnresolvedReferences,PyProtectedMember
            back_frame = sys._getframe(1)
            back_traceback = types.TracebackType(tb_next=None, tb_frame=back_frame, tb_lasti=back_frame.f_lasti,
                                                 tb_lineno=back_frame.f_lineno)
            raise exception_type(message).with_traceback(back_traceback)

    @staticmethod
    def from_name(name: str) -> "ErrorAction":
        """ Parse command-line style names: "ignore", "warn", "raise" """
        lookup = {"ignore": ErrorAction.Ignore, "warn": ErrorAction.Warn, "raise": ErrorAction.RaiseException}
        try:
            return lookup[name.lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown error action '{name}', expected one of {', '.join(lookup)}")


def command_results(command: Text, exception_on_stderr: bool = True) -> Text:
    """
    Execute shell command. Raise exception if unsuccessful, otherwise return string with output
    """
    sub_p = subprocess.Popen(command, stdout=subprocess.PIPE,
                             stderr=subprocess.PIPE, shell=True)
    with sub_p.stdout as pipe_in, sub_p.stderr as pipe_err:
        results = pipe_in.read().decode('utf-8')
        err = pipe_err.read().decode('utf-8')
    if err:
        if exception_on_stderr:
            raise RuntimeError('Error executing %s:\n%s' % (command, err[:-1]))
        else:
            warnings.warn(err[:-1])
    return results


def add_exception_context(exception: Exception, context: str):
    """
    Add additional context to a caught exception
    Args:
        exception: Exception
            Exception that was caught
        context: str
            Extra info to add to exception.
    """
    if len(exception.args) == 1 and type(exception.args[0]) is str:
        exception.args = (f"{context}: {exception.args[0]}",)
    else:
        exception.args = (context,) + exception.args


def get_cpuinfo() -> (int, int):
    """
    Partially cross-platform method to get physical and logical cpu info.
    Returns:
        num_cores: int
            Number of physical cores in the system
        num_hyperthreads: int
            Number of logical cores in the system
    """
    if sys.platform == 'linux':  # pragma: no cover
        core_ids = set()
        num_hyperthreads = 0
        with open("/proc/cpuinfo", 'r') as f_in:
            for line in f_in:
                line = line.strip()
                if not line or ':' not in line:
                    continue
                key, value = tuple(word.strip() for word in line.split(':', 1))
                if key == "processor":
                    num_hyperthreads += 1
                elif key == "core id":
                    core_ids.add(value)
        # emulated linux processors may lack a "core id"
        num_cores = len(core_ids) if core_ids else num_hyperthreads
    elif sys.platform == "darwin":  # pragma: no cover
        num_hyperthreads, num_cores = tuple(
            int(word)
            for word in command_results("sysctl -n hw.logicalcpu hw.physicalcpu").split()
        )
    else:  # pragma: no cover
        raise OSError(f"platform '{sys.platform}' is not supported")

    return num_cores, num_hyperthreads


def available_memory(return_gb: bool = True) -> float:
    """
    Return memory available for use by this program

    Args:
        return_gb: bool
            If True, return available memory in GiB; otherwise return in bytes.
    Returns:
        mem: float
            amount of memory available
    """
    mem = psutil.virtual_memory().available
    return mem / 2.0**30 if return_gb else float(mem)


try:
    num_physical_cpus, num_logical_cpus = get_cpuinfo()
    if num_physical_cpus < 1:
        raise OSError("no cpus found in cpuinfo")
except OSError:
    num_physical_cpus = multiprocessing.cpu_count()
    num_logical_cpus = num_physical_cpus
hyperthread_ratio = max(1, num_logical_cpus // num_physical_cpus)
max_allowed_hyperthread = hyperthread_ratio * int(os.environ['NSLOTS']) if 'NSLOTS' in os.environ \
    else max(num_logical_cpus, num_physical_cpus)
max_allowed_physical = int(os.environ.get('NSLOTS', num_physical_cpus))


def num_jobs_to_use(
        num_jobs: Optional[int] = None,
        required_worker_memory: Optional[Numeric] = 0,
        required_master_memory: Optional[Numeric] = 0,
        require_physical_cpus: bool = False
) -> int:
    """
    Return number of jobs to actually use, based on num_jobs and constraints from available system resources (number of
    physical cpus, number of cpu threads, and memory) and the environment variable NSLOTS (if set).
    Args:
        num_jobs: int or None
            Number of jobs requested to use.
            if num_jobs < 0 or None: try to use NSLOTS if set, otherwise cpu count (physical or threads)
            if num_jobs >= 0: try to use max(num_jobs, 1)
        required_worker_memory: number (Default=0)
            Memory (in GiB) that each worker will need to execute a task. If the requested number of jobs will not fit
            into memory, cap the number of created jobs so that the task will finish successfully.
        required_master_memory: number (Default=0)
            Memory (in GiB) that the master process will need.
        require_physical_cpus: bool (Default=False)
            If True: cap num_jobs at max_allowed_physical
            If False: cap num_jobs at max_allowed_hyperthread
    Returns:
        num_jobs: int
            Number of jobs to actually use. Will be >= 1
    """
    if required_worker_memory is None:
        required_worker_memory = 0
    if required_master_memory is None:
        required_master_memory = 0
    max_allowed = max_allowed_physical if require_physical_cpus else max_allowed_hyperthread
    num_jobs = max_allowed if num_jobs is None or num_jobs < 0 else min(max(num_jobs, 1), max_allowed)
    if required_worker_memory > 0:
        memory_capped_jobs = (available_memory() - required_master_memory) / required_worker_memory
        num_jobs = min(num_jobs, max(1, int(memory_capped_jobs)))
    elif required_master_memory > available_memory():
        warnings.warn(
            f"Operating in serial because require {required_master_memory} GiB but have {available_memory()} GiB"
        )
        num_jobs = 1
    return num_jobs
