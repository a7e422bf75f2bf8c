"""Interfaces to the systems around the scanner, plus file-based defaults.

The scanner never scores records or writes presets itself. It hands
extracted records to a :class:`SampleSink`, asks a :class:`PresetGenerator`
for a summary, and the daily gate reads scores back through a
:class:`ScoreProvider` against the roster from a :class:`RosterProvider`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class SampleSink(Protocol):
    async def write(self, domain: str, uid: int, records: list[dict]) -> int:
        """Persist extracted records; returns how many were written."""
        ...

    def has_samples(self, domain: str) -> bool: ...


@runtime_checkable
class PresetGenerator(Protocol):
    async def generate(self, domain: str, force: bool = False) -> Path | None:
        """Build a scored summary from current samples; returns its path."""
        ...

    def has_usable_preset(self, domain: str) -> bool: ...


@runtime_checkable
class ScoreProvider(Protocol):
    async def scores(self, domain: str, summary_path: Path) -> dict[str, float | None]: ...


@runtime_checkable
class RosterProvider(Protocol):
    async def entity_ids(self, domain: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# File-based implementations
# ---------------------------------------------------------------------------


class JsonlSampleSink:
    """Appends records to ``<root>/<domain>/<entity_id>.jsonl``.

    Writes to the same file are serialized; different files proceed
    concurrently.
    """

    def __init__(self, root_dir: str | Path) -> None:
        self._root = Path(root_dir)
        self._locks: dict[Path, asyncio.Lock] = {}
        self._written: dict[str, int] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        if path not in self._locks:
            self._locks[path] = asyncio.Lock()
        return self._locks[path]

    @staticmethod
    def _append(path: Path, lines: list[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.writelines(lines)

    async def write(self, domain: str, uid: int, records: list[dict]) -> int:
        grouped: dict[Path, list[str]] = {}
        for record in records:
            entity_id = record.get("entity_id")
            if entity_id is None:
                continue
            path = self._root / domain / f"{entity_id}.jsonl"
            line = json.dumps({"uid": uid, **record}, ensure_ascii=False) + "\n"
            grouped.setdefault(path, []).append(line)

        count = 0
        for path, lines in grouped.items():
            async with self._lock_for(path):
                await asyncio.to_thread(self._append, path, lines)
            count += len(lines)
        self._written[domain] = self._written.get(domain, 0) + count
        return count

    def has_samples(self, domain: str) -> bool:
        if self._written.get(domain):
            return True
        domain_dir = self._root / domain
        return domain_dir.is_dir() and any(domain_dir.glob("*.jsonl"))


class SummaryScoreReader:
    """Reads per-entity scores from a summary JSON file.

    Expected shape: ``{"generatedAt": ..., "entities": {"<id>": {"score": n}}}``.
    Entities without a numeric score map to ``None``.
    """

    async def scores(self, domain: str, summary_path: Path) -> dict[str, float | None]:
        text = await asyncio.to_thread(Path(summary_path).read_text, encoding="utf-8")
        data = json.loads(text)
        entities = data.get("entities") if isinstance(data, dict) else None
        out: dict[str, float | None] = {}
        for entity_id, entry in (entities or {}).items():
            score = entry.get("score") if isinstance(entry, dict) else entry
            out[str(entity_id)] = float(score) if isinstance(score, (int, float)) else None
        return out


class StaticRosterProvider:
    """Roster from an in-memory mapping ``{domain: [entity ids]}``."""

    def __init__(self, rosters: Mapping[str, list]) -> None:
        self._rosters = {domain: [str(i) for i in ids] for domain, ids in rosters.items()}

    async def entity_ids(self, domain: str) -> list[str]:
        return list(self._rosters.get(domain, []))


class JsonRosterProvider:
    """Roster file ``<dir>/<domain>.json`` holding a list or an id-keyed mapping."""

    def __init__(self, roster_dir: str | Path) -> None:
        self._dir = Path(roster_dir)

    async def entity_ids(self, domain: str) -> list[str]:
        path = self._dir / f"{domain}.json"
        if not path.exists():
            logger.warning("Roster file missing for domain %s: %s", domain, path, extra={"domain": domain})
            return []
        data = json.loads(await asyncio.to_thread(path.read_text, encoding="utf-8"))
        ids = data.keys() if isinstance(data, dict) else data
        return sorted({str(i) for i in ids if str(i).isdigit()}, key=int)


class CommandPresetGenerator:
    """Runs an external preset builder and reports its summary file.

    The command is invoked as ``<command...> --domain <id> [--force]`` and
    is expected to write ``<summary_dir>/<id>/summary.json``.
    """

    def __init__(self, command: list[str], summary_dir: str | Path, timeout_seconds: float = 600.0) -> None:
        self._command = list(command)
        self._summary_dir = Path(summary_dir)
        self._timeout = timeout_seconds

    def summary_path(self, domain: str) -> Path:
        return self._summary_dir / domain / "summary.json"

    def has_usable_preset(self, domain: str) -> bool:
        return self.summary_path(domain).is_file()

    async def generate(self, domain: str, force: bool = False) -> Path | None:
        if not self._command:
            return self.summary_path(domain) if self.has_usable_preset(domain) else None
        args = [*self._command, "--domain", domain]
        if force:
            args.append("--force")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Preset generation timed out after %.0fs", self._timeout, extra={"domain": domain})
            return None
        if proc.returncode != 0:
            logger.warning(
                "Preset generation exited with %s",
                proc.returncode,
                extra={"domain": domain, "error_reason": stderr.decode("utf-8", "replace")[-500:]},
            )
            return None
        path = self.summary_path(domain)
        return path if path.is_file() else None
