# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Language server detection.

Orchestrates finding a running Antigravity language server:

1. Run the platform strategy's listing command (bounded by a timeout).
2. Parse stdout into ProcessRecords (pure, see platforms/).
3. Optionally validate each candidate by probing its ports with an
   authenticated GetUserStatus call, so a stale process whose token no
   longer works is skipped.
4. Return connection info for the first candidate that passes.

Detection never raises for "not found"; command failures count as a failed
attempt and the whole sequence is retried with growing delays.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from ..core.config import MonitorConfig
from ..core.constants import (
    DEFAULT_DETECT_ATTEMPTS,
    DEFAULT_DETECT_BASE_DELAY,
    DETECT_DELAY_GROWTH,
    PORT_LIST_TIMEOUT,
    QUICK_CHECK_TIMEOUT,
)
from ..core.errors import TransportError, mask_credential
from ..core.interfaces import CommandRunner, Transport
from ..core.types import ConnectionProtocol, ProcessRecord, ServerConnectionInfo
from .platforms import PlatformStrategy, get_platform_strategy

lib_logger = logging.getLogger("quota_monitor")


async def run_shell_command(command: str, timeout: float) -> Tuple[int, str, str]:
    """
    Run a shell command and capture its output.

    Args:
        command: Shell command line (pipelines allowed)
        timeout: Seconds before the process is killed

    Returns:
        Tuple of (exit code, stdout, stderr)

    Raises:
        asyncio.TimeoutError: If the command did not finish in time
        OSError: If the shell could not be started
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class ProcessDetector:
    """
    Finds the language server process and extracts its port and CSRF token.

    Without a transport, the first parsed candidate is trusted as-is. With a
    transport, candidates are validated by probing (listening ports over
    HTTPS first, then the extension port with protocol fallback).
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        strategy: Optional[PlatformStrategy] = None,
        runner: Optional[CommandRunner] = None,
        transport: Optional[Transport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the detector.

        Args:
            config: Monitor configuration (timeouts, host, request metadata)
            strategy: Listing strategy; defaults to the platform's
            runner: Command runner; defaults to run_shell_command
            transport: Transport used to validate candidates (optional)
            sleep: Awaitable sleep used between attempts
        """
        self._config = config or MonitorConfig()
        self._strategy = strategy or get_platform_strategy(
            preferred=self._config.detect_strategy
        )
        self._runner = runner or run_shell_command
        self._transport = transport
        self._sleep = sleep

    @property
    def strategy(self) -> PlatformStrategy:
        return self._strategy

    async def detect(
        self,
        attempts: int = DEFAULT_DETECT_ATTEMPTS,
        base_delay: float = DEFAULT_DETECT_BASE_DELAY,
        verbose: bool = False,
        silent: bool = False,
    ) -> Optional[ServerConnectionInfo]:
        """
        Detect the language server, retrying with growing delays.

        Args:
            attempts: Maximum number of detection attempts
            base_delay: Seconds to wait after the first failed attempt;
                        multiplied by 1.5 after each further failure
            verbose: Log each step at INFO level
            silent: Keep the outcome messages at DEBUG (repeated polls)

        Returns:
            Connection info, or None if no usable server was found
        """
        attempts = max(1, attempts)

        for attempt in range(1, attempts + 1):
            self._log(verbose, f"[LS Detect] Attempt {attempt}/{attempts}...")

            try:
                info = await self._try_detect(verbose)
            except Exception as e:
                # Timeout or failure of the listing command itself
                self._log(verbose, f"[LS Detect] Attempt {attempt} failed: {e!r}", warning=True)
                info = None

            if info is not None:
                self._log(
                    not silent,
                    f"[LS Detect] Found language server on port {info.port} "
                    f"(pid={info.pid}, attempt {attempt})",
                )
                return info

            if attempt < attempts:
                await self._sleep(base_delay * DETECT_DELAY_GROWTH ** (attempt - 1))

        self._log(not silent, "[LS Detect] Language server not found after all attempts")
        return None

    async def list_candidates(
        self,
        timeout: Optional[float] = None,
        verbose: bool = False,
    ) -> List[ProcessRecord]:
        """
        Run the listing command and parse candidate processes.

        A non-zero exit with empty stdout is grep reporting no matches and
        yields an empty list.

        Raises:
            asyncio.TimeoutError / OSError: If the command itself failed
        """
        command = self._strategy.command_text()
        self._log(verbose, f"[LS Detect] Running: {command}")

        _, stdout, stderr = await self._runner(
            command, timeout if timeout is not None else self._config.command_timeout
        )
        if stderr.strip():
            self._log(verbose, f"[LS Detect] stderr: {stderr.strip()}", warning=True)
        if not stdout.strip():
            self._log(verbose, "[LS Detect] No matching processes found")
            return []

        records = self._strategy.parse(stdout)
        self._log(verbose, f"[LS Detect] Found {len(records)} candidate process(es)")
        return records

    async def is_running(self) -> bool:
        """Quick check for a candidate process, without validation."""
        try:
            records = await self.list_candidates(timeout=QUICK_CHECK_TIMEOUT)
        except Exception as e:
            lib_logger.debug(f"[LS Detect] Quick check failed: {e!r}")
            return False
        return len(records) > 0

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    async def _try_detect(self, verbose: bool) -> Optional[ServerConnectionInfo]:
        for record in await self.list_candidates(verbose=verbose):
            info = await self._validate(record, verbose)
            if info is not None:
                return info
        return None

    async def _validate(
        self, record: ProcessRecord, verbose: bool
    ) -> Optional[ServerConnectionInfo]:
        """Turn a candidate into connection info, probing it if possible."""
        if self._transport is None:
            return ServerConnectionInfo(
                port=record.extension_port,
                csrf_token=record.csrf_token,
                pid=record.pid,
                protocol=ConnectionProtocol.HTTPS,
            )

        self._log(
            verbose,
            f"[LS Detect] Testing pid {record.pid}, extension port "
            f"{record.extension_port}, token {mask_credential(record.csrf_token)}",
        )

        ports = await self._listening_ports(record.pid, verbose)
        if not ports:
            ports = [record.extension_port]

        for port in ports:
            protocol = await self._probe(port, record.csrf_token, allow_fallback=False)
            if protocol is not None:
                self._log(verbose, f"[LS Detect] Port {port} answered over {protocol.value}")
                return ServerConnectionInfo(
                    port=port,
                    csrf_token=record.csrf_token,
                    pid=record.pid,
                    protocol=protocol,
                )

        protocol = await self._probe(record.extension_port, record.csrf_token, allow_fallback=True)
        if protocol is not None:
            self._log(verbose, f"[LS Detect] Validated via fallback, protocol {protocol.value}")
            return ServerConnectionInfo(
                port=record.extension_port,
                csrf_token=record.csrf_token,
                pid=record.pid,
                protocol=protocol,
            )

        self._log(verbose, f"[LS Detect] Validation failed for pid {record.pid}")
        return None

    async def _listening_ports(self, pid: int, verbose: bool) -> List[int]:
        try:
            _, stdout, _ = await self._runner(
                self._strategy.listening_ports_command(pid), PORT_LIST_TIMEOUT
            )
        except Exception as e:
            self._log(verbose, f"[LS Detect] Could not list ports of pid {pid}: {e!r}")
            return []

        ports = self._strategy.parse_listening_ports(stdout)
        if ports:
            self._log(verbose, f"[LS Detect] pid {pid} listening on ports: {ports}")
        return ports

    async def _probe(
        self, port: int, csrf_token: str, allow_fallback: bool
    ) -> Optional[ConnectionProtocol]:
        """Scheme on which an authenticated GetUserStatus returned 200."""
        try:
            response = await self._transport.request(
                self._config.host,
                port,
                self._config.api_path,
                method="POST",
                headers=self._config.request_headers(csrf_token),
                body=self._config.request_metadata(),
                timeout=self._config.probe_timeout,
                allow_fallback=allow_fallback,
            )
        except TransportError:
            return None
        return response.protocol if response.status_code == 200 else None

    @staticmethod
    def _log(enabled: bool, message: str, warning: bool = False) -> None:
        if not enabled:
            lib_logger.debug(message)
        elif warning:
            lib_logger.warning(message)
        else:
            lib_logger.info(message)
