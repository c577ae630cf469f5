"""Reference data loader and Test Context construction."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson
import yaml

from .exceptions import ImsLoadRunnerError
from .logging_config import get_logger
from .models import ScenarioWeight, TestContext

logger = get_logger("reference_data")

DEFAULT_REFERENCE_DATA = Path(__file__).resolve().parent / "data" / "reference_data.yaml"
REQUIRED_ENTITIES = ("securities", "counterparties", "aggregation_units", "books")
OPTIONAL_ENTITIES = ("positions", "locates")


@dataclass(slots=True, frozen=True)
class ReferenceData:
    securities: tuple[dict[str, Any], ...]
    counterparties: tuple[dict[str, Any], ...]
    aggregation_units: tuple[dict[str, Any], ...]
    books: tuple[dict[str, Any], ...]
    positions: tuple[dict[str, Any], ...] = ()
    locates: tuple[dict[str, Any], ...] = ()


def _read(path: Path) -> Any:
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ImsLoadRunnerError(
            f"Cannot read reference data: {e}", path=str(path), original_error=e
        ) from e
    try:
        if path.suffix.lower() == ".json":
            return orjson.loads(raw)
        return yaml.safe_load(raw)
    except (yaml.YAMLError, orjson.JSONDecodeError) as e:
        logger.exception("Failed to parse reference data file")
        raise ImsLoadRunnerError(
            f"Invalid reference data file: {e}", path=str(path), original_error=e
        ) from e


def load_reference_data(path: str | Path | None = None) -> ReferenceData:
    """Load the reference corpus (YAML or JSON).

    Args:
        path: Alternate corpus file; the packaged corpus is used when None

    Raises:
        ImsLoadRunnerError: File unreadable, not a mapping, or a required entity list is empty
    """
    p = Path(path) if path is not None else DEFAULT_REFERENCE_DATA
    if not p.exists():
        raise ImsLoadRunnerError(f"Reference data file not found: {p}", path=str(p))
    raw = _read(p)
    if not isinstance(raw, dict):
        raise ImsLoadRunnerError(
            "Reference data must be a mapping of entity lists",
            path=str(p),
            context={"actual_type": type(raw).__name__},
        )

    entities: dict[str, tuple[dict[str, Any], ...]] = {}
    for key in REQUIRED_ENTITIES + OPTIONAL_ENTITIES:
        items = raw.get(key) or []
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ImsLoadRunnerError(f"Reference data '{key}' must be a list of objects", path=str(p), entity=key)
        if key in REQUIRED_ENTITIES and not items:
            raise ImsLoadRunnerError(f"Reference data '{key}' is empty", path=str(p), entity=key)
        entities[key] = tuple(items)

    data = ReferenceData(**entities)
    logger.debug(
        "Loaded reference data: %d securities, %d counterparties, %d books",
        len(data.securities), len(data.counterparties), len(data.books),
    )
    return data


def build_test_context(
    environment,
    session,
    reference: ReferenceData,
    weights: tuple[ScenarioWeight, ...],
) -> TestContext:
    """Assemble the immutable per-run TestContext."""
    return TestContext(
        environment=environment,
        session=session,
        securities=reference.securities,
        counterparties=reference.counterparties,
        books=reference.books,
        aggregation_units=reference.aggregation_units,
        positions=reference.positions,
        locates=reference.locates,
        scenario_weights=weights,
    )
