"""Delay node: waits for a unit-aware duration, waking early on cancellation."""

import time

from flowengine.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.node import NodeContext, NodeResult
from flowengine.nodes.base import NodeExecutor, iso_now

UNIT_MS = {
    "ms": 1,
    "milliseconds": 1,
    "s": 1000,
    "seconds": 1000,
    "m": 60 * 1000,
    "minutes": 60 * 1000,
    "h": 60 * 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
}


def to_milliseconds(duration: float, unit: str) -> float:
    """Convert a duration to milliseconds. Unrecognised units mean seconds."""
    return duration * UNIT_MS.get(unit, UNIT_MS["seconds"])


class DelayNodeExecutor(NodeExecutor):
    kind = "delay"
    failure_label = "Delay execution"

    async def run(self, ctx: NodeContext) -> NodeResult:
        config = ctx.node.config
        raw = config.get("duration") or config.get("delay") or 1
        unit = str(config.get("unit") or "seconds").lower()

        try:
            duration = float(ctx.context.interpolate_value(raw))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid delay duration: {raw!r}") from e
        if duration < 0:
            raise ConfigurationError(f"Delay duration must not be negative: {duration}")

        delay_ms = to_milliseconds(duration, unit)
        started = time.monotonic()
        cancelled = await ctx.cancel_token.sleep(delay_ms / 1000)
        actual_ms = int((time.monotonic() - started) * 1000)

        data = {
            "requestedDuration": duration,
            "unit": unit,
            "delayMs": delay_ms,
            "actualDelayMs": actual_ms,
            "timestamp": iso_now(),
        }
        if cancelled:
            raise ExecutorFailure("Delay interrupted by cancellation", data=data)
        return NodeResult(success=True, data=data)
