"""GPU architecture matrix: family -> driver floor, toolkit majors, MIG.

The matrix is a static decision table loaded once per process. Any problem
with the source (unreadable file, schema violation, duplicate family) raises
:class:`~gpuprov.errors.MatrixLoadError`; callers treat that as fatal since
nothing can be resolved without the table. A family that is simply absent is
not an error here: :meth:`GpuMatrix.get` returns ``None`` and the resolver
applies its unknown-GPU policy.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping

import jsonschema
import yaml

from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.errors import MatrixLoadError

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_MATRIX_PATH = PACKAGE_ROOT / "data" / "gpu_matrix.yaml"
MATRIX_SCHEMA_PATH = PACKAGE_ROOT / "schema" / "gpu_matrix.schema.json"


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that refuses duplicate mapping keys instead of last-wins."""

    def construct_mapping(self, node, deep=False):  # type: ignore[override]
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    None, None, f"duplicate key {key!r}", key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass(frozen=True)
class MatrixEntry:
    family: str
    min_driver: DriverBranch
    toolkits: FrozenSet[int]
    mig: bool = False


@dataclass(frozen=True)
class ToolkitRelease:
    major: int
    default: ToolkitVersion
    min_driver: DriverBranch | None = None


class GpuMatrix:
    def __init__(
        self,
        entries: Iterable[MatrixEntry],
        releases: Iterable[ToolkitRelease] = (),
    ) -> None:
        self._entries: Dict[str, MatrixEntry] = {}
        for entry in entries:
            key = entry.family.lower()
            if key in self._entries:
                raise MatrixLoadError(f"duplicate matrix entry for family '{entry.family}'")
            self._entries[key] = entry
        self._releases: Dict[int, ToolkitRelease] = {}
        for rel in releases:
            if rel.major in self._releases:
                raise MatrixLoadError(f"duplicate toolkit release for major {rel.major}")
            self._releases[rel.major] = rel

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, family: object) -> bool:
        return isinstance(family, str) and family.lower() in self._entries

    def families(self) -> List[str]:
        return [e.family for e in self._entries.values()]

    def get(self, family: str) -> MatrixEntry | None:
        return self._entries.get(family.lower())

    def lookup(self, family: str) -> MatrixEntry:
        entry = self.get(family)
        if entry is None:
            raise KeyError(family)
        return entry

    def release_for(self, major: int) -> ToolkitRelease:
        """Release row for ``major``; majors without a row default to ``<major>.0``."""

        rel = self._releases.get(major)
        if rel is None:
            return ToolkitRelease(major=major, default=ToolkitVersion(major, 0))
        return rel

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "GpuMatrix":
        try:
            jsonschema.validate(doc, load_matrix_schema())
        except jsonschema.ValidationError as exc:
            raise MatrixLoadError(f"matrix schema violation: {exc.message}") from exc

        entries = [
            MatrixEntry(
                family=str(item["family"]),
                min_driver=DriverBranch.parse(item["min_driver"]),
                toolkits=frozenset(int(t) for t in item["toolkits"]),
                mig=bool(item.get("mig", False)),
            )
            for item in doc.get("architectures", [])
        ]
        releases = []
        for item in doc.get("toolkit_releases", []) or []:
            major = int(item["major"])
            default = ToolkitVersion.parse(item.get("default", f"{major}.0"))
            if default.major != major:
                raise MatrixLoadError(f"toolkit release {default} does not belong to major {major}")
            min_driver = item.get("min_driver")
            releases.append(
                ToolkitRelease(
                    major=major,
                    default=default,
                    min_driver=DriverBranch.parse(min_driver) if min_driver is not None else None,
                )
            )
        return cls(entries, releases)


def load_matrix_schema() -> Dict[str, Any]:
    with open(MATRIX_SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def load_matrix(path: str | Path | None = None) -> GpuMatrix:
    """Load the matrix from YAML (or JSON) at ``path``, or the packaged default."""

    source = Path(path) if path else DEFAULT_MATRIX_PATH
    try:
        with open(source, "r", encoding="utf-8") as f:
            doc = yaml.load(f, Loader=_UniqueKeyLoader)
    except OSError as exc:
        raise MatrixLoadError(f"cannot read matrix {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise MatrixLoadError(f"malformed matrix {source}: {exc}") from exc
    if not isinstance(doc, dict):
        raise MatrixLoadError(f"matrix {source} must be a mapping")
    matrix = GpuMatrix.from_document(doc)
    logger.debug("Loaded GPU matrix from %s (%d families)", source, len(matrix))
    return matrix


__all__ = [
    "MatrixEntry",
    "ToolkitRelease",
    "GpuMatrix",
    "load_matrix",
    "load_matrix_schema",
    "DEFAULT_MATRIX_PATH",
]
