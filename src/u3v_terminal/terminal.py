"""Terminal session state machine, output drain and command streaming."""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Union

from .errors import AuthenticationError, SessionError, SessionTimeoutError, U3VError
from .polling import SYSTEM_CLOCK, Clock, PollPolicy
from .registers import (
    AUTH_BUFFER_CAPACITY,
    AUTH_CMD_AUTHENTICATE,
    AUTH_CMD_LOCK,
    TERMINAL_AUTH_BUF_ADDR,
    TERMINAL_AUTH_CMD_ADDR,
    TERMINAL_AUTH_STATUS_ADDR,
    TERMINAL_AVAIL_ADDR,
    TERMINAL_CHUNK_HINT_ADDR,
    TERMINAL_DATA_ADDR,
    TERMINAL_MAGIC,
    TERMINAL_MAGIC_ADDR,
    TERMINAL_STATUS_ADDR,
    TERMINAL_VERSION_ADDR,
    Control,
    MemoryRegisters,
    Status,
)
from .uvcp import MAX_READ_LENGTH, MAX_WRITE_LENGTH

LOG = logging.getLogger(__name__)

__all__ = [
    "SessionPhase",
    "SessionState",
    "TerminalSession",
]

DEFAULT_CHUNK_HINT = 4096
FALLBACK_CHUNK_HINT = 512

SESSION_START_TIMEOUT = 2.0
SESSION_POLL_INTERVAL = 0.05
RESET_SETTLE = 0.2

DRAIN_IDLE_TIMEOUT = 0.2
DRAIN_MAX_WAIT = 5.0
DRAIN_POLL_INTERVAL = 0.05


class SessionPhase(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    AUTHENTICATED = "authenticated"
    READY = "ready"


@dataclasses.dataclass
class SessionState:
    """Values latched from the device plus the caller supplied preferences."""

    initialized: bool = False
    firmware_version: int = 0
    chunk_hint: int = DEFAULT_CHUNK_HINT
    password: str = ""
    echo_enabled: bool = True


class TerminalSession:
    """Drive the firmware terminal through its control/status registers.

    The session moves ``UNINITIALIZED -> INITIALIZED -> AUTHENTICATED ->
    READY``.  :meth:`ensure_session` performs whichever steps are still
    missing, so callers can simply invoke it before touching the data window.
    """

    def __init__(
        self,
        registers: MemoryRegisters,
        *,
        password: str = "",
        echo_enabled: bool = True,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.registers = registers
        self.state = SessionState(password=password, echo_enabled=echo_enabled)
        self.phase = SessionPhase.UNINITIALIZED
        self._clock = clock

    @property
    def firmware_version(self) -> int:
        return self.state.firmware_version

    @property
    def chunk_hint(self) -> int:
        return self.state.chunk_hint

    def set_password(self, password: str) -> None:
        self.state.password = password

    def set_echo_enabled(self, enabled: bool) -> None:
        self.state.echo_enabled = enabled

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Validate the terminal header and latch version and chunk hint."""

        if self.state.initialized:
            return

        magic, version = self.registers.read_registers(TERMINAL_MAGIC_ADDR, 2)
        if magic != TERMINAL_MAGIC:
            raise SessionError(
                f"Unexpected terminal magic 0x{magic:08x}, expected 0x{TERMINAL_MAGIC:08x}"
            )

        refined = self._read_optional(TERMINAL_VERSION_ADDR, 0)
        if refined:
            version = refined
        chunk_hint = self._read_optional(TERMINAL_CHUNK_HINT_ADDR, self.state.chunk_hint)
        if chunk_hint == 0:
            chunk_hint = FALLBACK_CHUNK_HINT

        self.state.firmware_version = version
        self.state.chunk_hint = chunk_hint
        self.state.initialized = True
        self.phase = SessionPhase.INITIALIZED
        LOG.info("Terminal firmware version 0x%08x, chunk hint %d", version, chunk_hint)

    def ensure_auth(self) -> None:
        """Unlock the terminal with the configured password unless already unlocked."""

        if self.registers.read_register(TERMINAL_AUTH_STATUS_ADDR):
            self._advance(SessionPhase.AUTHENTICATED)
            return

        password = self.state.password
        if not password:
            raise AuthenticationError(
                "Terminal locked: provide password via --password or TY_TERM_PASS"
            )
        secret = password.encode("utf-8")
        if len(secret) > AUTH_BUFFER_CAPACITY:
            raise AuthenticationError(
                f"Password exceeds the {AUTH_BUFFER_CAPACITY} byte authentication buffer"
            )

        self.registers.write_memory(TERMINAL_AUTH_BUF_ADDR, secret)
        self.registers.write_register(TERMINAL_AUTH_CMD_ADDR, AUTH_CMD_AUTHENTICATE)
        if not self.registers.read_register(TERMINAL_AUTH_STATUS_ADDR):
            raise AuthenticationError("Authentication failed")
        LOG.info("Terminal unlocked")
        self._advance(SessionPhase.AUTHENTICATED)

    def ensure_session(self) -> None:
        """Make sure the remote shell is running and ready for I/O."""

        self.initialize()
        self.ensure_auth()

        if self.registers.read_register(TERMINAL_STATUS_ADDR) & Status.READY:
            self.phase = SessionPhase.READY
            return

        LOG.debug("Starting terminal session (echo=%s)", self.state.echo_enabled)
        self.registers.write_register(
            TERMINAL_STATUS_ADDR, self._control_word(Control.START | Control.CLEAR_FLAGS)
        )
        poll = PollPolicy(SESSION_START_TIMEOUT, SESSION_POLL_INTERVAL, self._clock)
        while not poll.expired():
            if self.registers.read_register(TERMINAL_STATUS_ADDR) & Status.READY:
                self.phase = SessionPhase.READY
                return
            poll.wait()
        raise SessionTimeoutError("Timed out waiting for terminal session")

    def reset(self) -> None:
        """Restart the remote shell while keeping the authentication state."""

        self.initialize()
        LOG.info("Resetting terminal session")
        self.registers.write_register(
            TERMINAL_STATUS_ADDR, self._control_word(Control.RESET | Control.CLEAR_FLAGS)
        )
        self._clock.sleep(RESET_SETTLE)
        self.ensure_session()

    def lock(self) -> None:
        self.registers.write_register(TERMINAL_AUTH_CMD_ADDR, AUTH_CMD_LOCK)
        if self.phase in (SessionPhase.AUTHENTICATED, SessionPhase.READY):
            self.phase = SessionPhase.INITIALIZED
        LOG.debug("Terminal locked")

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def send_command(self, command: Union[str, bytes]) -> None:
        """Queue ``command`` for the remote shell, newline terminated."""

        payload = command.encode("utf-8") if isinstance(command, str) else bytes(command)
        if not payload.endswith(b"\n"):
            payload += b"\n"
        self.ensure_session()
        self._write_chunks(payload)

    def write_input(self, data: bytes) -> None:
        """Relay raw keyboard bytes to the remote shell."""

        self._write_chunks(data)

    def drain_output(
        self,
        idle_timeout: float = DRAIN_IDLE_TIMEOUT,
        max_wait: float = DRAIN_MAX_WAIT,
    ) -> bytes:
        """Collect terminal output until it stays quiet for ``idle_timeout``.

        The terminal has no end-of-message marker; the loop stops once no
        byte has arrived for ``idle_timeout`` seconds or after ``max_wait``
        seconds overall.  Overflow and error bits are reported once per call.
        """

        self.ensure_session()

        output = bytearray()
        poll = PollPolicy(max_wait, DRAIN_POLL_INTERVAL, self._clock)
        warned_overflow = False
        warned_error = False
        read_limit = min(self.state.chunk_hint, MAX_READ_LENGTH)

        while not poll.expired():
            status = self.registers.read_register(TERMINAL_STATUS_ADDR)
            if status & Status.OVERFLOW and not warned_overflow:
                LOG.warning("Terminal output overflowed, some bytes dropped")
                warned_overflow = True
            if status & Status.ERROR and not warned_error:
                LOG.warning("Terminal reported error bit")
                warned_error = True

            available = self.registers.read_register(TERMINAL_AVAIL_ADDR)
            if available == 0:
                if poll.idle_for() > idle_timeout:
                    break
                poll.wait()
                continue

            output += self.registers.read_memory(TERMINAL_DATA_ADDR, min(available, read_limit))
            poll.mark_progress()

        return bytes(output)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_chunks(self, payload: bytes) -> None:
        chunk = max(1, min(self.state.chunk_hint, MAX_WRITE_LENGTH))
        for offset in range(0, len(payload), chunk):
            self.registers.write_memory(TERMINAL_DATA_ADDR, payload[offset : offset + chunk])

    def _control_word(self, flags: Control) -> int:
        echo = Control.ECHO_ENABLE if self.state.echo_enabled else Control.ECHO_DISABLE
        return int(flags | echo)

    def _read_optional(self, address: int, fallback: int) -> int:
        try:
            return self.registers.read_register(address)
        except U3VError as exc:
            LOG.debug("Optional register 0x%x unreadable (%s), using %d", address, exc, fallback)
            return fallback

    def _advance(self, phase: SessionPhase) -> None:
        if self.phase != SessionPhase.READY:
            self.phase = phase
