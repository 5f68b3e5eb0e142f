"""
Notevault - a multi-user markdown note store.
This package implements the flat-file storage engine behind a note-taking
service: per-user metadata indexes, markdown content files, media folders,
share links and whole-installation backup/restore.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.1.0"
