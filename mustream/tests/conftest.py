import os
import sys
from concurrent.futures import Executor, Future

import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


class ImmediateExecutor(Executor):
    """Runs submitted callables inline so prefetch side effects are deterministic in tests."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append(args)
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def immediate_executor():
    return ImmediateExecutor()


@pytest.fixture(autouse=True)
def _clear_server_secrets_env():
    """Ensure MUSTREAM_*_SECRET variables do not leak across tests."""
    keys = [k for k in os.environ if k.startswith('MUSTREAM_')]
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith('MUSTREAM_')]:
            os.environ.pop(k, None)
        for k, v in backup.items():
            if v is not None:
                os.environ[k] = v
