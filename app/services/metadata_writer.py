"""
Writes system-derived metadata into ``Asset.metadata``.

Keys a user edited by hand are listed under ``_manual_overrides`` and are
never overwritten by automatic extraction.
"""
import copy
import logging
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

OVERRIDES_KEY = "_manual_overrides"

# Bookkeeping keys the pipeline always owns
SYSTEM_KEYS = frozenset({
    "metadata_extracted",
    "metadata_extracted_at",
    "_color_analysis",
    "ai_tagging_completed",
    "ai_tagging_completed_at",
    "pipeline_completed_at",
})


class MetadataWriteRejectedError(RuntimeError):
    """Every requested key was rejected; the write would silently drop data."""

    retryable = False

    def __init__(self, asset_id: str, keys: Iterable[str]):
        self.asset_id = asset_id
        self.keys = sorted(keys)
        super().__init__(f"All metadata keys rejected for asset {asset_id}: {', '.join(self.keys)}")


class AutomaticMetadataWriter:
    def __init__(self, protected: Optional[Iterable[str]] = None):
        self.protected = set(protected or ())

    def merge(self, asset_id: str, current: Optional[Dict], updates: Dict) -> Dict:
        """Return a new metadata dict with ``updates`` applied.

        Raises MetadataWriteRejectedError when ``updates`` is non-empty and
        none of its user-facing keys could be written.
        """
        merged = copy.deepcopy(current or {})
        overrides = set(merged.get(OVERRIDES_KEY) or [])
        rejected: List[str] = []
        written: List[str] = []
        for key, value in updates.items():
            if key in SYSTEM_KEYS:
                merged[key] = value
                continue
            if key in overrides or key in self.protected:
                rejected.append(key)
                continue
            merged[key] = value
            written.append(key)

        if rejected:
            logger.info("[AutomaticMetadataWriter] asset %s kept manual values for %s", asset_id, rejected)
        if rejected and not written:
            raise MetadataWriteRejectedError(asset_id, rejected)
        return merged
