"""obsidx ingest pipeline: breakpoint scanning, structural chunking, note metadata."""

from obsidx.ingest.base import BaseChunker
from obsidx.ingest.breakpoints import Breakpoint, find_fences, scan_breakpoints
from obsidx.ingest.notes import NoteMeta, parse_note
from obsidx.ingest.scanner import ScannedFile, scan_vault
from obsidx.ingest.structural import StructuralChunker

__all__ = [
    "BaseChunker",
    "Breakpoint",
    "NoteMeta",
    "ScannedFile",
    "StructuralChunker",
    "find_fences",
    "parse_note",
    "scan_breakpoints",
    "scan_vault",
]
