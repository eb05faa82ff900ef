""" Execution context (variable environment) for a workflow run. """
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator

from .expressions import MISSING, lookup, split_path


@dataclass
class ExecutionContext(Mapping):
    """
    Variables visible to node templates. Parallel branches work on a fork:
    writes land in the fork's own layer and are merged back after the branches
    rendezvous; reads fall through to the parent.
    """
    data: ChainMap = field(default_factory=ChainMap)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "ExecutionContext":
        return cls(ChainMap(dict(values)))

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def resolve(self, dotted: str, default: Any = None) -> Any:
        value = lookup(self, split_path(dotted))
        return default if value is MISSING else value

    def set(self, name: str, value: Any) -> None:
        self.data[name] = value

    def set_many(self, kv: Dict[str, Any]) -> None:
        self.data.update(kv)

    def fork(self) -> "ExecutionContext":
        return ExecutionContext(self.data.new_child())

    @property
    def changes(self) -> Dict[str, Any]:
        """ Values written in this layer only. """
        return self.data.maps[0]

    def merge(self, child: "ExecutionContext") -> None:
        self.data.update(child.changes)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self.data)
