import contextlib
from typing import Any, MutableMapping

import joblib
import scanpy as sc

from ._validate import isiterable


def session_info() -> None:
    import datetime
    import sys
    from importlib.metadata import PackageNotFoundError, version

    print("*" * 64)
    print(f"Execution date and time: {datetime.datetime.now()}")
    print(f"Python: {sys.version.split()[0]}")
    print("*" * 64)
    for pkg in ["numpy", "scipy", "pandas", "anndata", "scanpy", "scikit-misc"]:
        try:
            print(f"{pkg}: {version(pkg)}")
        except PackageNotFoundError:
            print(f"{pkg}: not installed")
    print("*" * 64)


def set_env(n_jobs: int = 8, verbosity: int = 4, print_info: bool = True) -> None:
    sc.settings.verbosity = verbosity
    sc.settings.n_jobs = n_jobs
    if print_info:
        session_info()


def update_config(k: str, v: Any, config: MutableMapping[str, Any]) -> None:
    """Set `k` to the default `v` in `config` unless one of its aliases is already set."""
    k_defined = False
    keys = k if isiterable(k) else [k]
    for _k in keys:
        if _k in config.keys():
            k_defined = True
            if isinstance(v, MutableMapping):
                for v_k in v.keys():
                    if v_k not in config[_k]:
                        config[_k][v_k] = v[v_k]
            break
    if not k_defined:
        config[keys[0]] = v
    return


@contextlib.contextmanager
def tqdm_joblib(tqdm_object):
    """Context manager to patch joblib to report into tqdm progress bar given as argument"""

    def tqdm_print_progress(self):
        if self.n_completed_tasks > tqdm_object.n:
            n_completed = self.n_completed_tasks - tqdm_object.n
            tqdm_object.update(n=n_completed)

    original_print_progress = joblib.parallel.Parallel.print_progress
    joblib.parallel.Parallel.print_progress = tqdm_print_progress

    try:
        yield tqdm_object
    finally:
        joblib.parallel.Parallel.print_progress = original_print_progress
        tqdm_object.close()


__all__ = [
    "session_info",
    "set_env",
    "update_config",
    "tqdm_joblib",
]
