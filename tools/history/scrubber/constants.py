"""Canonical constants for sanitizer stages and defaults."""

from __future__ import annotations

STAGES = ("mirror", "backup", "rewrite", "resign")

DONE_FLAGS: dict[str, str] = {
    "mirror": "S_MIRROR_DONE",
    "backup": "S_BACKUP_DONE",
    "rewrite": "S_REWRITE_DONE",
    "resign": "S_RESIGN_DONE",
}

DEFAULT_REMOTE_URL_TEMPLATE = "git@github.com:{repository}.git"
DEFAULT_WORKDIR_NAME = "cleaner"
DEFAULT_COMMAND_TIMEOUT_SECONDS = 3600

NAME_MATCH_MODES = ("literal", "regex")

REMOTE_NAME = "origin"


class ExitCode:
    SUCCESS = 0
    USAGE = 2
    CONFIGURATION = 3
    BACKUP = 4
    REPOSITORY_FAILURES = 5
    LOCK_ACTIVE = 7
    CANCELLED = 130
