"""JSON sidecar metadata lookup and output metadata writing.

Acquisition metadata lives in a JSON file next to each image
(``image.nii`` -> ``image.json``). Two layouts are understood:

- BIDS sidecars, with fields at the top level. BIDS stores times in
  seconds; ``EchoTime`` and ``RepetitionTime`` are returned in ms.
- Converted scanner headers with an ``acqpar`` block, whose values are
  already in ms.

A missing file or key is not an error: `get` returns None and the caller
falls back to defaults.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from b1mappy.core.io import nifti_basename


BIDS_SECONDS_FIELDS = ('EchoTime', 'RepetitionTime')


def sidecar_path(image_path: str) -> Path:
    p = Path(image_path)
    return p.with_name(nifti_basename(str(p)) + '.json')


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == '':
        return True
    if isinstance(value, (list, tuple, dict)) and len(value) == 0:
        return True
    return False


def _to_ms(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_to_ms(v) for v in value]
    try:
        return float(value) * 1e3
    except (TypeError, ValueError):
        return value


class SidecarMetadata:
    """`get(path, key)` lookup over JSON sidecars, cached per file."""

    def __init__(self) -> None:
        self._cache: Dict[str, Optional[dict]] = {}

    def _load(self, image_path: str) -> Optional[dict]:
        key = str(image_path)
        if key in self._cache:
            return self._cache[key]

        js = sidecar_path(image_path)
        content: Optional[dict] = None
        if js.exists():
            try:
                content = json.loads(js.read_text(encoding='utf-8'))
            except (OSError, ValueError) as e:
                logging.warning(f"Could not read metadata sidecar {js.name}: {e}")
                content = None
            if content is not None and not isinstance(content, dict):
                content = None
        self._cache[key] = content
        return content

    def get(self, image_path: str, key: str) -> Any:
        content = self._load(image_path)
        if content is None:
            return None

        acqpar = content.get('acqpar')
        if isinstance(acqpar, dict) and not _is_empty(acqpar.get(key)):
            return acqpar.get(key)

        value = content.get(key)
        if _is_empty(value):
            return None
        if key in BIDS_SECONDS_FIELDS:
            return _to_ms(value)
        return value

    def write(self, image_path: str, header: dict) -> str:
        """Write ``header`` as the sidecar of ``image_path`` and return its path."""
        js = sidecar_path(image_path)
        js.write_text(json.dumps(to_jsonable(header), indent=2, sort_keys=True), encoding='utf-8')
        self._cache.pop(str(image_path), None)
        return str(js)


def to_jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return to_jsonable(obj.tolist())
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, float) and not np.isfinite(obj):
        return None
    return obj


def init_output_metadata(
    input_files,
    params: dict,
    *,
    version: str,
    procstep_suffix: str = '',
    imtype: str = 'B1+ map',
    units: str = 'p.u.',
) -> dict:
    """Metadata block written next to every output map."""
    return {
        'history': {
            'procstep': {
                'descrip': 'B1mapPy - B1+ map calculation' + (f' ({procstep_suffix})' if procstep_suffix else ''),
                'version': version,
                'params': params,
                'procdate': datetime.now().isoformat(timespec='seconds'),
            },
            'input': [{'filename': str(f)} for f in input_files],
            'output': {
                'imtype': imtype,
                'units': units,
            },
        }
    }
