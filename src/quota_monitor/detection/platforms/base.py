# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Base interface for process listing strategies.

A strategy knows which shell command lists candidate processes on a platform
and how to turn that command's stdout into ProcessRecords. Everything here is
pure text processing so it can be tested against literal fixture output
without running any command.
"""

import re
from abc import ABC, abstractmethod
from typing import List, Optional

from ...core.constants import (
    CMDLINE_MAX_LENGTH,
    MAX_EXTENSION_PORT,
    MIN_EXTENSION_PORT,
)
from ...core.types import ProcessRecord

PORT_ARG_PATTERN = re.compile(r"--extension_server_port[=\s]+(\d+)", re.IGNORECASE)
TOKEN_ARG_PATTERN = re.compile(r"--csrf_token[=\s]+([a-zA-Z0-9_-]+)", re.IGNORECASE)

# lsof: "language_ 1234 user 12u IPv4 ... TCP 127.0.0.1:42100 (LISTEN)"
_LSOF_LISTEN = re.compile(r"127\.0\.0\.1:(\d+).*\(LISTEN\)")
_LSOF_LOCALHOST_LISTEN = re.compile(r"localhost:(\d+).*\(LISTEN\)")
# ss -tlnp: "LISTEN 0 4096 127.0.0.1:42100 0.0.0.0:* users:(...pid=1234,...)"
_SS_LISTEN = re.compile(r"LISTEN\s+\d+\s+\d+\s+(?:127\.0\.0\.1|\*):(\d+)")


def extract_extension_port(cmdline: str) -> Optional[int]:
    """Port from --extension_server_port, or None if absent/out of range."""
    match = PORT_ARG_PATTERN.search(cmdline)
    if not match:
        return None
    port = int(match.group(1))
    if port < MIN_EXTENSION_PORT or port > MAX_EXTENSION_PORT:
        return None
    return port


def extract_csrf_token(cmdline: str) -> Optional[str]:
    """Token from --csrf_token, or None if absent."""
    match = TOKEN_ARG_PATTERN.search(cmdline)
    return match.group(1) if match else None


def build_process_record(pid: int, cmdline: str) -> Optional[ProcessRecord]:
    """
    Extract port and token from a command line.

    Args:
        pid: Process id parsed from the same line
        cmdline: Full command line of the process

    Returns:
        ProcessRecord, or None if either argument is missing or invalid
    """
    extension_port = extract_extension_port(cmdline)
    if extension_port is None:
        return None

    csrf_token = extract_csrf_token(cmdline)
    if csrf_token is None:
        return None

    return ProcessRecord(
        pid=pid,
        extension_port=extension_port,
        csrf_token=csrf_token,
        cmdline=cmdline[:CMDLINE_MAX_LENGTH],
    )


def parse_listening_ports(stdout: str) -> List[int]:
    """
    Parse lsof or ss output into the sorted, de-duplicated loopback ports a
    process is listening on.
    """
    ports: List[int] = []
    for line in stdout.strip().splitlines():
        match = (
            _LSOF_LISTEN.search(line)
            or _SS_LISTEN.search(line)
            or _LSOF_LOCALHOST_LISTEN.search(line)
        )
        if match:
            port = int(match.group(1))
            if port not in ports:
                ports.append(port)
    return sorted(ports)


class PlatformStrategy(ABC):
    """
    Abstract base class for process listing strategies.

    Each platform (or listing technique) implements command_text() and
    parse(); the detector only depends on this interface.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this strategy."""
        ...

    @abstractmethod
    def command_text(self) -> str:
        """Shell command that lists candidate processes."""
        ...

    @abstractmethod
    def parse(self, stdout: str) -> List[ProcessRecord]:
        """
        Parse the command's stdout into process records.

        Lines that cannot be parsed are skipped; the order of the returned
        records follows the order of the lines.
        """
        ...

    def listening_ports_command(self, pid: int) -> str:
        """Shell command listing the TCP ports a process listens on."""
        return (
            f"lsof -Pan -p {pid} -i 2>/dev/null "
            f'|| ss -tlnp 2>/dev/null | grep "pid={pid},"'
        )

    def parse_listening_ports(self, stdout: str) -> List[int]:
        """Parse the output of listening_ports_command()."""
        return parse_listening_ports(stdout)
