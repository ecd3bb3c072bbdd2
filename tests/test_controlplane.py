"""Deadline-bounded control-plane calls."""

import time

import pytest

from vmcreds.controlplane import CallContext, ControlPlaneNotFound, run_bounded
from vmcreds.errors import DeadlineExceeded


def test_run_bounded_returns_result():
    ctx = CallContext(1.0, "add")

    assert run_bounded(ctx, lambda ctx, a, b: a + b, 2, 3) == 5
    assert not ctx.cancelled.is_set()


def test_run_bounded_reraises_errors():
    def lookup(ctx):
        raise ControlPlaneNotFound("vm-42")

    with pytest.raises(ControlPlaneNotFound):
        run_bounded(CallContext(1.0), lookup)


def test_run_bounded_cancels_on_deadline():
    observed = []

    def stall(ctx):
        observed.append(ctx.cancelled.wait(5.0))

    ctx = CallContext(0.1, "stall")
    started = time.monotonic()
    with pytest.raises(DeadlineExceeded) as excinfo:
        run_bounded(ctx, stall)

    assert time.monotonic() - started < 0.35
    assert ctx.cancelled.is_set()
    assert ctx.expired()
    assert excinfo.value.operation == "stall"


def test_call_context_remaining():
    ctx = CallContext(10.0)

    assert 9.0 < ctx.remaining() <= 10.0
    assert not ctx.expired()
