"""Shared helpers for building encoder command lines."""

from __future__ import annotations

import os
import re

DEFAULT_ENCODER_BINARY = "ffmpeg"

# A token is a run of unquoted non-space characters and "quoted spans".
_TOKEN_RE = re.compile(r'(?:[^\s"]+|"[^"]*")+')
_QUOTED_SPAN_RE = re.compile(r'"([^"]*)"')


def tokenize_command(command: str) -> list[str]:
    """Split a stored command template into an argument vector.

    Whitespace separates tokens except inside double quotes, and the quotes
    themselves are dropped: ``-i "some file.ts"`` yields ``["-i", "some file.ts"]``.
    Backslashes are passed through untouched. A stray unmatched quote is
    skipped rather than raising, so the result for such input is best effort.
    """

    if not command:
        return []
    return [_QUOTED_SPAN_RE.sub(r"\1", match) for match in _TOKEN_RE.findall(command)]


def _names_program(token: str, binary: str) -> bool:
    program = os.path.basename(binary) or binary
    return os.path.basename(token) in {program, DEFAULT_ENCODER_BINARY}


def build_encoder_argv(binary: str, command: str) -> list[str]:
    """Return the full argv for launching ``binary`` with a profile command.

    Profile commands may be written with or without the program name in
    front (``ffmpeg -f x11grab ...``); a leading program token is dropped so
    the configured binary is always the one that runs.
    """

    args = tokenize_command(command)
    if args and _names_program(args[0], binary):
        args = args[1:]
    return [binary, *args]
