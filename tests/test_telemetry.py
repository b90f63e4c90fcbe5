import pytest

from telemetry import trace_span


@trace_span("tests.add", attr_from_args=lambda a, b: {"a": a, "b": b})
def add(a, b):
    """Adds."""
    return a + b


@trace_span("tests.fail", attr_from_args=lambda: 1 / 0)
async def fail():
    raise RuntimeError("boom")


def test_sync_function_keeps_identity():
    assert add(2, 3) == 5
    assert add.__name__ == "add"
    assert add.__doc__ == "Adds."


@pytest.mark.asyncio
async def test_async_errors_propagate_despite_bad_attributes():
    with pytest.raises(RuntimeError, match="boom"):
        await fail()
