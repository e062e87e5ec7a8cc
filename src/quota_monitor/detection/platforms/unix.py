# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Unix process listing strategies (Linux and macOS).

The language server is started by the IDE with arguments like:

    language_server_linux_x64 --extension_server_port 36199 --csrf_token abc123 ...
"""

import re
from typing import List

from ...core.types import ProcessRecord
from .base import PlatformStrategy, build_process_record

_APP_DATA_DIR_PATTERN = re.compile(r"--app_data_dir\s+antigravity\b", re.IGNORECASE)
_PATH_MARKERS = ("/antigravity/", "\\antigravity\\")
_BINARY_MARKERS = ("language_server_linux", "language_server_macos")

_PROC_PID_PATTERN = re.compile(r"PID:(\d+)")
_PROC_CMD_PATTERN = re.compile(r"CMD:(.+)")


def is_language_server_process(cmdline: str) -> bool:
    """True if a command line belongs to the Antigravity language server."""
    if _APP_DATA_DIR_PATTERN.search(cmdline):
        return True
    lower_cmd = cmdline.lower()
    if any(marker in lower_cmd for marker in _PATH_MARKERS):
        return True
    return any(marker in lower_cmd for marker in _BINARY_MARKERS)


class PsStrategy(PlatformStrategy):
    """
    Lists processes with ps.

    Output format is ``<pid> <args...>`` per line; non-language-server
    processes matched by the grep (e.g. an editor with "csrf_token" in its
    arguments) are rejected by is_language_server_process().
    """

    @property
    def name(self) -> str:
        return "ps"

    def command_text(self) -> str:
        # -ww: unlimited width so long argument lists are not truncated
        return 'ps -ww -eo pid,args | grep -E "(language_server|csrf_token)" | grep -v grep'

    def parse(self, stdout: str) -> List[ProcessRecord]:
        records: List[ProcessRecord] = []
        for line in stdout.strip().splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) < 2 or not parts[0].isdigit():
                continue

            pid = int(parts[0])
            cmdline = parts[1]
            if not is_language_server_process(cmdline):
                continue

            record = build_process_record(pid, cmdline)
            if record is not None:
                records.append(record)
        return records


class ProcStrategy(PlatformStrategy):
    """
    Finds processes by name with pgrep and reads their live argument list
    from /proc (Linux only).

    Output format is ``PID:<pid> CMD:<args...>`` per line.
    """

    @property
    def name(self) -> str:
        return "proc"

    def command_text(self) -> str:
        return (
            'for pid in $(pgrep -f "language_server"); do '
            "echo \"PID:$pid CMD:$(cat /proc/$pid/cmdline 2>/dev/null | tr '\\0' ' ')\"; "
            "done 2>/dev/null"
        )

    def parse(self, stdout: str) -> List[ProcessRecord]:
        records: List[ProcessRecord] = []
        for line in stdout.strip().splitlines():
            pid_match = _PROC_PID_PATTERN.search(line)
            cmd_match = _PROC_CMD_PATTERN.search(line)
            if not pid_match or not cmd_match:
                continue

            record = build_process_record(int(pid_match.group(1)), cmd_match.group(1))
            if record is not None:
                records.append(record)
        return records
