"""GPU fact types and parsing of fact documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

UNKNOWN_FAMILY = "unknown"

# compute capability -> architecture family
_CC_FAMILY: Dict[Tuple[int, int], str] = {
    (3, 0): "Kepler",
    (3, 2): "Kepler",
    (3, 5): "Kepler",
    (3, 7): "Kepler",
    (5, 0): "Maxwell",
    (5, 2): "Maxwell",
    (5, 3): "Maxwell",
    (6, 0): "Pascal",
    (6, 1): "Pascal",
    (6, 2): "Pascal",
    (7, 0): "Volta",
    (7, 2): "Volta",
    (7, 5): "Turing",
    (8, 0): "Ampere",
    (8, 6): "Ampere",
    (8, 7): "Ampere",
    (8, 9): "Ada",
    (9, 0): "Hopper",
    (10, 0): "Blackwell",
    (10, 3): "Blackwell",
    (11, 0): "Blackwell",
    (12, 0): "Blackwell",
    (12, 1): "Blackwell",
}


def parse_compute_capability(value: Any) -> Tuple[int, int]:
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return int(value[0]), int(value[1])
    text = str(value).strip()
    major, _, minor = text.partition(".")
    try:
        return int(major), int(minor or 0)
    except ValueError as exc:
        raise ValueError(f"invalid compute capability {value!r}") from exc


def family_for_compute_capability(cc: Tuple[int, int]) -> str:
    return _CC_FAMILY.get(tuple(cc), UNKNOWN_FAMILY)  # type: ignore[arg-type]


@dataclass(frozen=True)
class GpuDescriptor:
    index: int
    name: str
    compute_capability: Tuple[int, int]
    family: str
    memory_mb: int | None = None

    @classmethod
    def from_fact(cls, fact: Mapping[str, Any], index: int = 0) -> "GpuDescriptor":
        cc = parse_compute_capability(fact.get("compute_capability", fact.get("compute_cap", "0.0")))
        family = fact.get("architecture") or fact.get("family") or family_for_compute_capability(cc)
        memory = fact.get("memory_mb")
        return cls(
            index=int(fact.get("index", index)),
            name=str(fact.get("name", "unknown")),
            compute_capability=cc,
            family=str(family),
            memory_mb=int(memory) if memory is not None else None,
        )

    @property
    def compute_capability_str(self) -> str:
        return f"{self.compute_capability[0]}.{self.compute_capability[1]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "compute_capability": self.compute_capability_str,
            "architecture": self.family,
            "memory_mb": self.memory_mb,
        }


@dataclass(frozen=True)
class NodeFacts:
    hostname: str
    gpus: Tuple[GpuDescriptor, ...] = field(default_factory=tuple)
    driver_version: str | None = None

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any], hostname: str | None = None) -> "NodeFacts":
        gpus = tuple(GpuDescriptor.from_fact(g, index=i) for i, g in enumerate(doc.get("gpus") or []))
        driver = doc.get("driver_version")
        return cls(
            hostname=str(hostname or doc.get("hostname") or "localhost"),
            gpus=gpus,
            driver_version=str(driver) if driver else None,
        )

    def families(self) -> List[str]:
        seen: List[str] = []
        for gpu in self.gpus:
            if gpu.family not in seen:
                seen.append(gpu.family)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "driver_version": self.driver_version,
            "gpus": [g.to_dict() for g in self.gpus],
        }


def parse_fleet_facts(doc: Any) -> List[NodeFacts]:
    """Accept a single node document, a list of them, or ``{hostname: doc}``."""

    if isinstance(doc, list):
        return [NodeFacts.from_dict(item) for item in doc]
    if isinstance(doc, dict):
        if "gpus" in doc or "hostname" in doc:
            return [NodeFacts.from_dict(doc)]
        return [NodeFacts.from_dict(item or {}, hostname=host) for host, item in doc.items()]
    raise ValueError("facts document must be an object or a list of objects")


__all__ = [
    "UNKNOWN_FAMILY",
    "GpuDescriptor",
    "NodeFacts",
    "parse_compute_capability",
    "family_for_compute_capability",
    "parse_fleet_facts",
]
