from __future__ import annotations

import logging

import pytest

from assistant_stream_client import CancellationToken, OperationCancelled


def test_cancel_is_monotonic_and_idempotent() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.on_cancel(lambda: calls.append("a"))

    assert not token.is_cancelled
    token.throw_if_cancelled()

    token.cancel()
    token.cancel()

    assert token.is_cancelled
    assert calls == ["a"]


def test_throw_if_cancelled_raises_operation_cancelled() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled, match="Operation cancelled"):
        token.throw_if_cancelled()


def test_listener_registered_after_cancel_runs_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []

    token.on_cancel(lambda: calls.append(1))

    assert calls == [1]


def test_listeners_fire_in_registration_order_even_if_one_fails(
    caplog: pytest.LogCaptureFixture,
) -> None:
    token = CancellationToken()
    calls: list[str] = []

    def broken() -> None:
        raise RuntimeError("listener broke")

    token.on_cancel(lambda: calls.append("first"))
    token.on_cancel(broken)
    token.on_cancel(lambda: calls.append("last"))

    with caplog.at_level(logging.ERROR, logger="assistant_stream_client.cancellation"):
        token.cancel()

    assert calls == ["first", "last"]
    assert "cancellation listener" in caplog.text
