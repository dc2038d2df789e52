import pytest

from app.services.metadata_writer import AutomaticMetadataWriter, MetadataWriteRejectedError


def test_merge_keeps_unrelated_keys_and_does_not_mutate_input():
    current = {"category_id": 3, "tags": ["x"]}
    merged = AutomaticMetadataWriter().merge("a1", current, {"dominant_colors": [], "metadata_extracted": True})
    assert merged == {"category_id": 3, "tags": ["x"], "dominant_colors": [], "metadata_extracted": True}
    assert current == {"category_id": 3, "tags": ["x"]}


def test_manual_override_wins_over_partial_write():
    current = {"font": "Manual Sans", "_manual_overrides": ["font"]}
    merged = AutomaticMetadataWriter().merge("a1", current, {"font": "Auto", "dominant_colors": ["#000000"]})
    assert merged["font"] == "Manual Sans"
    assert merged["dominant_colors"] == ["#000000"]


def test_all_keys_rejected_raises():
    current = {"_manual_overrides": ["dominant_colors"]}
    with pytest.raises(MetadataWriteRejectedError) as exc:
        AutomaticMetadataWriter().merge("a1", current, {"dominant_colors": [], "metadata_extracted": True})
    assert exc.value.keys == ["dominant_colors"]
    assert "a1" in str(exc.value)


def test_protected_keys_are_rejected():
    writer = AutomaticMetadataWriter(protected={"category_id"})
    with pytest.raises(MetadataWriteRejectedError):
        writer.merge("a1", {}, {"category_id": 9})
