"""tmux boundary: the only module that talks to the terminal multiplexer."""

import asyncio
from typing import Optional, Set, Tuple

from loguru import logger

from .error_handling import ActionError, CaptureError


class TmuxMultiplexer:
    """
    Async wrapper around the tmux CLI.

    Every call runs in its own subprocess bounded by ``command_timeout``.
    Read failures raise CaptureError, write failures raise ActionError.
    """

    def __init__(self, binary: str = "tmux", command_timeout: float = 5.0):
        self.binary = binary
        self.command_timeout = command_timeout

    async def _run(self, *args: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """Run one tmux command, returning (returncode, stdout, stderr)."""
        proc = await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=timeout or self.command_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode,
            stdout.decode("utf-8", "replace"),
            stderr.decode("utf-8", "replace").strip(),
        )

    async def _read(self, target: str, *args: str) -> str:
        try:
            code, out, err = await self._run(*args)
        except asyncio.TimeoutError as e:
            raise CaptureError(target, "tmux timed out") from e
        except OSError as e:
            raise CaptureError(target, f"cannot run {self.binary}: {e}") from e
        if code != 0:
            raise CaptureError(target, err or f"tmux exited with {code}")
        return out

    async def _act(self, action: str, target: str, *args: str) -> None:
        try:
            code, _, err = await self._run(*args)
        except asyncio.TimeoutError as e:
            raise ActionError(action, target, "tmux timed out") from e
        except OSError as e:
            raise ActionError(action, target, f"cannot run {self.binary}: {e}") from e
        if code != 0:
            raise ActionError(action, target, err or f"tmux exited with {code}")

    async def list_sessions(self) -> Set[str]:
        """Names of all running sessions; empty when no server is running."""
        try:
            code, out, err = await self._run("list-sessions", "-F", "#{session_name}")
        except asyncio.TimeoutError as e:
            raise CaptureError("tmux", "list-sessions timed out") from e
        except OSError as e:
            raise CaptureError("tmux", f"cannot run {self.binary}: {e}") from e
        if code != 0:
            if "no server running" in err or "no sessions" in err:
                return set()
            raise CaptureError("tmux", err or f"list-sessions exited with {code}")
        return {line.strip() for line in out.splitlines() if line.strip()}

    async def session_exists(self, name: str) -> bool:
        """Ask tmux about one session. Raises CaptureError when tmux cannot answer."""
        try:
            code, _, _ = await self._run("has-session", "-t", name)
        except asyncio.TimeoutError as e:
            raise CaptureError("tmux", "has-session timed out") from e
        except OSError as e:
            raise CaptureError("tmux", f"cannot run {self.binary}: {e}") from e
        return code == 0

    async def capture_text(self, address: str, lines: Optional[int] = None) -> str:
        """Visible text of a pane, or its last ``lines`` lines of history."""
        args = ["capture-pane", "-p", "-t", address]
        if lines:
            args += ["-S", f"-{lines}"]
        return await self._read(address, *args)

    async def pane_command(self, address: str) -> str:
        """Name of the process currently running in the pane."""
        out = await self._read(address, "display-message", "-p", "-t", address, "#{pane_current_command}")
        return out.strip()

    async def create_session(self, name: str, pane_count: int = 1) -> None:
        """Create a detached session with ``pane_count`` tiled panes."""
        await self._act("create_session", name, "new-session", "-d", "-s", name)
        for _ in range(max(pane_count, 1) - 1):
            await self._act("create_session", name, "split-window", "-t", f"{name}:0")
            await self._act("create_session", name, "select-layout", "-t", f"{name}:0", "tiled")
        logger.info(f"Created tmux session {name} with {pane_count} pane(s)")

    async def launch_agent(self, address: str, command: str) -> None:
        """Type the agent launch command into the pane."""
        await self._act("launch_agent", address, "send-keys", "-t", address, command, "C-m")

    async def send_interrupt(self, address: str) -> None:
        await self._act("interrupt_agent", address, "send-keys", "-t", address, "C-c")
