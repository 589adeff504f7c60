"""
Presets - Strategy Variations and Timeframe Triplets

Loads the packaged JSON preset files:
- variations.json: named strategy parameter sets (camelCase keys, the
  same keys EngineConfig.from_dict() accepts) for --compare-all runs
- timeframes.json: HTF/MTF/LTF triplets keyed by preset name

Both loaders take an optional path so a run can point at its own file.

Usage:
    variations = load_variations()
    triplet = load_timeframe_presets()['standard']
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

PRESET_DIR = Path(__file__).parent / 'preset_data'
DEFAULT_TIMEFRAME = 'standard'


@dataclass(frozen=True)
class TimeframePreset:
    """Higher / medium / lower timeframe triplet."""
    key: str
    htf: str
    mtf: str
    ltf: str
    name: str

    @property
    def timeframes(self) -> List[str]:
        return [self.htf, self.mtf, self.ltf]


@dataclass(frozen=True)
class Variation:
    """Named strategy parameter set."""
    name: str
    params: Dict[str, Any]


def _read_json(path: Path) -> Any:
    with open(path) as f:
        return json.load(f)


def load_variations(path: Optional[Union[str, Path]] = None) -> List[Variation]:
    """
    Load strategy variations in file order.

    Args:
        path: JSON file with a list of records; defaults to the packaged file

    Returns:
        List of Variation (the 'name' key is split off from the parameters)

    Raises:
        ValueError: if the file is not a list of objects with a name
    """
    path = Path(path) if path else PRESET_DIR / 'variations.json'
    records = _read_json(path)
    if not isinstance(records, list):
        raise ValueError(f"{path}: expected a list of variations")

    variations = []
    for i, record in enumerate(records):
        if not isinstance(record, dict) or not record.get('name'):
            raise ValueError(f"{path}: variation #{i} has no name")
        params = {k: v for k, v in record.items() if k != 'name'}
        variations.append(Variation(name=record['name'], params=params))

    logger.debug("Loaded %d variations from %s", len(variations), path)
    return variations


def load_timeframe_presets(path: Optional[Union[str, Path]] = None) -> Dict[str, TimeframePreset]:
    """
    Load timeframe presets keyed by name.

    Raises:
        ValueError: if a preset is missing one of htf/mtf/ltf
    """
    path = Path(path) if path else PRESET_DIR / 'timeframes.json'
    data = _read_json(path)

    presets = {}
    for key, record in data.items():
        missing = [tf for tf in ('htf', 'mtf', 'ltf') if tf not in record]
        if missing:
            raise ValueError(f"{path}: preset '{key}' missing {', '.join(missing)}")
        presets[key] = TimeframePreset(
            key=key,
            htf=record['htf'],
            mtf=record['mtf'],
            ltf=record['ltf'],
            name=record.get('name', key),
        )
    return presets


def get_timeframe_preset(
    key: str,
    presets: Optional[Dict[str, TimeframePreset]] = None,
) -> TimeframePreset:
    """Preset by name; unknown names fall back to 'standard'."""
    presets = presets if presets is not None else load_timeframe_presets()
    if key not in presets:
        logger.warning("Unknown timeframe preset %r, using %s", key, DEFAULT_TIMEFRAME)
        return presets[DEFAULT_TIMEFRAME]
    return presets[key]
