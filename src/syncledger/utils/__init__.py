"""Utility modules for SyncLedger."""

from syncledger.utils.logger import setup_logging, get_logger
from syncledger.utils.display import print_summary

__all__ = ["setup_logging", "get_logger", "print_summary"]
