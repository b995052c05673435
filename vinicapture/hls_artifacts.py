"""Removal of generated HLS segments and playlists."""
from __future__ import annotations

import logging
import os

SEGMENT_SUFFIXES: tuple[str, ...] = (".ts",)
PLAYLIST_SUFFIXES: tuple[str, ...] = (".m3u8",)
ARTIFACT_SUFFIXES: tuple[str, ...] = SEGMENT_SUFFIXES + PLAYLIST_SUFFIXES

_log = logging.getLogger("hls_artifacts")


def clean_stream_artifacts(directory: str | os.PathLike[str]) -> int:
    """Delete ``*.ts`` and ``*.m3u8`` entries in ``directory``.

    Returns the number of files removed. A missing or unreadable directory is
    logged and counts as nothing removed; other entries are left alone.
    """

    try:
        names = os.listdir(directory)
    except OSError as exc:
        _log.error("Unable to list HLS directory %s: %s", directory, exc)
        return 0

    removed = 0
    for name in names:
        if not name.endswith(ARTIFACT_SUFFIXES):
            continue
        try:
            os.remove(os.path.join(directory, name))
        except FileNotFoundError:
            # The encoder prunes its own segments; losing the race is fine.
            continue
        except OSError as exc:
            _log.warning("Unable to remove %s: %s", name, exc)
            continue
        removed += 1
    _log.debug("HLS directory %s cleared; removed %d files", directory, removed)
    return removed
