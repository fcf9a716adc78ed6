"""
Bulk Result Reassembly

Bulk export results are newline-delimited JSON. Nested connections are
flattened: a child record only carries ``__parentId`` pointing at its
parent's ``id``. ``ExportAssembler`` rebuilds parent records with their
children attached, independent of the order the lines arrive in.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List

import structlog

from shopsync.errors import MalformedRecordError

logger = structlog.get_logger(__name__)

PARENT_KEY = "__parentId"


@dataclass
class ParentRecord:
    """A top-level record with its child records"""
    record: Dict[str, Any]
    children: List[Dict[str, Any]] = field(default_factory=list)
    
    @property
    def id(self) -> str:
        return self.record["id"]


@dataclass
class AssembledExport:
    """All parents of one export plus children whose parent never appeared"""
    parents: List[ParentRecord]
    orphans: List[Dict[str, Any]]
    line_count: int
    
    @property
    def child_count(self) -> int:
        return sum(len(parent.children) for parent in self.parents)


def decode_line(line: str, line_number: int) -> Dict[str, Any]:
    """Decode one JSONL line into a record"""
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedRecordError(f"invalid JSON ({e.msg})", line_number) from e
    if not isinstance(record, dict):
        raise MalformedRecordError("record is not an object", line_number)
    if PARENT_KEY not in record and "id" not in record:
        raise MalformedRecordError("top-level record without id", line_number)
    return record


class ExportAssembler:
    """
    Incrementally rebuilds parent/child structure.
    
    Example:
        assembler = ExportAssembler()
        async for line in client.stream_lines(url):
            assembler.add_line(line)
        export = assembler.finish()
    """
    
    def __init__(self):
        self._parents: Dict[str, ParentRecord] = {}
        self._pending_children: Dict[str, List[Dict[str, Any]]] = {}
        self._line_count = 0
    
    def add_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        self.add_record(decode_line(line, self._line_count + 1))
    
    def add_record(self, record: Dict[str, Any]) -> None:
        self._line_count += 1
        parent_id = record.get(PARENT_KEY)
        if parent_id is None:
            parent = ParentRecord(record=record)
            # A re-delivered parent keeps the children already attached
            existing = self._parents.get(parent.id)
            if existing is not None:
                parent.children = existing.children
            parent.children.extend(self._pending_children.pop(parent.id, []))
            self._parents[parent.id] = parent
            return
        
        parent = self._parents.get(parent_id)
        if parent is not None:
            parent.children.append(record)
        else:
            self._pending_children.setdefault(parent_id, []).append(record)
    
    def finish(self) -> AssembledExport:
        orphans = [child for children in self._pending_children.values() for child in children]
        if orphans:
            logger.warning("Bulk result contains orphaned child records", orphans=len(orphans))
        return AssembledExport(
            parents=list(self._parents.values()),
            orphans=orphans,
            line_count=self._line_count,
        )


async def assemble_records(records: AsyncIterator[Dict[str, Any]]) -> AssembledExport:
    """Consume already-decoded records into an assembled export"""
    assembler = ExportAssembler()
    async for record in records:
        assembler.add_record(record)
    return assembler.finish()


def reconstruct(lines: Iterable[str]) -> AssembledExport:
    """Reassemble a fully downloaded export"""
    assembler = ExportAssembler()
    for line in lines:
        assembler.add_line(line)
    return assembler.finish()
