"""Firmware container formats and restore-protocol helpers for device recovery."""

__version__ = "0.1.0"

__all__ = ["ace3", "asr", "common", "download", "fdr", "fls", "ftab", "log"]