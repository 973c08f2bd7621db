"""Module-level executors and pool tasks used by the tests.

Pool tasks must be importable by spawned worker processes, so they live here
rather than inside test functions.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from RegistryHarvest.failures import FatalFailure, RetryableFailure, ValidationFailure


def echo(value):
    return {"id": value, "length": len(value)}


def slow_echo(value):
    time.sleep(0.2)
    return value


def crash_on_marker(value):
    if value == "crash":
        os._exit(3)
    return value


def typed_failures(value):
    if value.startswith("bad"):
        raise ValidationFailure(value, "malformed identifier")
    if value.startswith("net"):
        raise RetryableFailure(value, "connection reset")
    if value.startswith("stop"):
        raise FatalFailure(value, "daily quota exhausted")
    return {"id": value}


class _Unpicklable(Exception):
    def __init__(self, value):
        super().__init__(value)
        self.handle = lambda: value


def unpicklable_error(value):
    raise _Unpicklable(value)


class _TwoArgError(Exception):
    def __init__(self, code, detail):
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail


def two_arg_error(value):
    raise _TwoArgError(500, value)


def unpicklable_result(value):
    return lambda: value


def lookup(query):
    """Executor for CLI runs: ``{"query": inn, ...}`` requests by dadata rules."""

    inn = query["query"] if isinstance(query, dict) else query
    if inn.startswith("0"):
        raise ValidationFailure(inn, "not found")
    if inn.endswith("9"):
        raise RetryableFailure(inn, "timeout")
    return [{"value": f"Company {inn}", "data": {"inn": inn, "kpp": "770101001"}}]


def quota_exceeded(query):
    inn = query["query"] if isinstance(query, dict) else query
    raise FatalFailure(inn, "403 daily quota")


def pick_name(payload):
    first = payload[0]
    return {"inn": first["data"]["inn"], "name": first.get("value")}
