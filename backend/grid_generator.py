"""
Grid Generator for Glimpse

Ranks the catalog for a context and lays the winners out on a grid.

Scoring:
    core tiles          200
    context tiles       priority * 10
    entity boost        +50 (once per tile)
    ad-hoc observation  80 (one per unmapped entity)
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from aac_models import ContextType, DisplayTile, TileDefinition, normalize_entity
from tile_catalog import CORE_TILES, ENTITY_TILE_MAP, tiles_for_context

CORE_SCORE = 200
CONTEXT_SCORE_MULTIPLIER = 10
ENTITY_BOOST = 50
ADHOC_SCORE = 80
ADHOC_PRIORITY = 8


@dataclass(frozen=True)
class ScoredTile:
    tile: TileDefinition
    score: float
    reason: str  # "core" | "context_match" | "custom" | "fallback"


@dataclass(frozen=True)
class GridTile:
    tile: TileDefinition
    position: int
    row: int
    col: int
    relevance_score: float


@dataclass(frozen=True)
class GridInstance:
    grid_id: str
    context: ContextType
    tiles: Tuple[GridTile, ...]
    generated_at: datetime
    grid_size: int
    situation_inference: Optional[str] = None

    @property
    def cols(self) -> int:
        return grid_columns(self.grid_size)


def grid_columns(grid_size: int) -> int:
    return 3 if grid_size <= 9 else 4


def _adhoc_tile(entity: str) -> TileDefinition:
    display_name = entity.replace("_", " ")
    return TileDefinition(
        id=f"adhoc_{entity}",
        label=f"Look, {display_name}!",
        tts=f"Look! I see a {display_name}!",
        emoji="👀",
        priority=ADHOC_PRIORITY,
    )


def generate_grid(
    context: ContextType,
    grid_size: int = 9,
    entities: Iterable[str] = (),
    situation_inference: Optional[str] = None,
) -> GridInstance:
    """
    Build a ranked grid for a context.

    Args:
        context: Context whose tile set is ranked below the core tiles
        grid_size: Number of slots (typically 6, 9 or 12)
        entities: Detected entity names, any casing/spacing
        situation_inference: Free text carried through to the grid

    Returns:
        GridInstance with at most grid_size tiles, highest score first
    """
    normalized = [normalize_entity(e) for e in entities if e and e.strip()]

    candidates: List[ScoredTile] = [ScoredTile(tile, CORE_SCORE, "core") for tile in CORE_TILES]
    candidates.extend(
        ScoredTile(tile, tile.priority * CONTEXT_SCORE_MULTIPLIER, "context_match")
        for tile in tiles_for_context(context)
    )

    # Entity boost: first matching entity only
    boosted: List[ScoredTile] = []
    for scored in candidates:
        for entity in normalized:
            if scored.tile.id in ENTITY_TILE_MAP.get(entity, ()):
                scored = ScoredTile(scored.tile, scored.score + ENTITY_BOOST, scored.reason)
                break
        boosted.append(scored)

    # Observation tiles for entities the boost table doesn't know about
    used = set()
    for entity in normalized:
        if entity in ENTITY_TILE_MAP or entity in used:
            continue
        used.add(entity)
        boosted.append(ScoredTile(_adhoc_tile(entity), ADHOC_SCORE, "custom"))

    # sorted() is stable, so ties keep catalog order
    ranked = sorted(boosted, key=lambda s: s.score, reverse=True)[:grid_size]

    cols = grid_columns(grid_size)
    tiles = tuple(
        GridTile(
            tile=scored.tile,
            position=index,
            row=index // cols,
            col=index % cols,
            relevance_score=scored.score,
        )
        for index, scored in enumerate(ranked)
    )

    return GridInstance(
        grid_id=uuid.uuid4().hex,
        context=context,
        tiles=tiles,
        generated_at=datetime.now(timezone.utc),
        grid_size=grid_size,
        situation_inference=situation_inference,
    )


def tile_to_display_tile(tile: TileDefinition, relevance_score: Optional[float] = None) -> DisplayTile:
    return DisplayTile(
        id=tile.id,
        text=tile.label,
        tts=tile.tts,
        emoji=tile.emoji,
        is_core=tile.always_show,
        is_suggested=relevance_score is not None and not tile.always_show,
        relevance_score=relevance_score,
    )


def grid_tile_to_display_tile(grid_tile: GridTile) -> DisplayTile:
    return tile_to_display_tile(grid_tile.tile, grid_tile.relevance_score)


def core_display_tiles() -> Tuple[DisplayTile, ...]:
    return tuple(tile_to_display_tile(tile) for tile in CORE_TILES)


def context_display_tiles(grid: GridInstance) -> Tuple[DisplayTile, ...]:
    """Non-core tiles of a grid, in rank order."""
    return tuple(
        grid_tile_to_display_tile(gt) for gt in grid.tiles if not gt.tile.always_show
    )
