"""
Data Ingestion Module
"""
from .jsonl import (
    AssembledExport,
    ExportAssembler,
    ParentRecord,
    assemble_records,
    reconstruct,
)
from .loader import LoadResult, RawRowLoader
from .parsers import CurrencyNormalizer, parse_line_items, parse_order, summarize_refunds

__all__ = [
    "AssembledExport",
    "ExportAssembler",
    "ParentRecord",
    "assemble_records",
    "reconstruct",
    "LoadResult",
    "RawRowLoader",
    "CurrencyNormalizer",
    "parse_line_items",
    "parse_order",
    "summarize_refunds",
]
