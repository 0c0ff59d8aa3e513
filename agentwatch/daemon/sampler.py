"""Terminal sampling with per-call timeouts."""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .error_handling import AgentWatchError, CaptureError
from .models import Sample, Target


class TerminalSampler:
    """
    Captures the current text of a target.

    Each capture is awaited with its own timeout, so one wedged pane cannot
    stall the others. Any failure surfaces as CaptureError.
    """

    def __init__(
        self,
        multiplexer,
        sample_timeout: float = 5.0,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.multiplexer = multiplexer
        self.sample_timeout = sample_timeout
        self.clock = clock

    async def sample(self, target: Target) -> Sample:
        """Capture the visible text of a target."""
        content = await self._capture(target, None)
        return Sample(target=target.name, content=content, captured_at=self.clock())

    async def tail(self, target: Target, lines: int) -> str:
        """Last ``lines`` lines of a target's output, trailing blanks removed."""
        content = await self._capture(target, lines)
        return "\n".join(content.rstrip().split("\n")[-lines:])

    async def _capture(self, target: Target, lines: Optional[int]) -> str:
        try:
            return await asyncio.wait_for(
                self.multiplexer.capture_text(target.address, lines=lines),
                timeout=self.sample_timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Capture of {target.name} timed out after {self.sample_timeout}s")
            raise CaptureError(target.name, "capture timed out") from e
        except CaptureError:
            raise
        except AgentWatchError as e:
            raise CaptureError(target.name, str(e)) from e
        except OSError as e:
            raise CaptureError(target.name, str(e)) from e
