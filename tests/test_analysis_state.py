import pytest

from app.services.analysis_state import (
    AnalysisStatus,
    InvalidTransitionError,
    advance_status,
    force_status,
    next_status,
    validate_transition,
)


def test_transition_table_is_linear():
    order = list(AnalysisStatus)
    for current, successor in zip(order, order[1:]):
        assert next_status(current) is successor
    assert next_status(AnalysisStatus.COMPLETE) is None
    assert AnalysisStatus.COMPLETE.is_terminal
    assert AnalysisStatus.SCORING.ordinal == 4


def test_null_status_reads_as_uploading():
    assert AnalysisStatus.coerce(None) is AnalysisStatus.UPLOADING
    assert AnalysisStatus.coerce("") is AnalysisStatus.UPLOADING
    assert AnalysisStatus.coerce("scoring") is AnalysisStatus.SCORING


def test_skipping_a_stage_is_rejected():
    with pytest.raises(InvalidTransitionError):
        validate_transition(AnalysisStatus.UPLOADING, AnalysisStatus.EXTRACTING_METADATA)
    with pytest.raises(InvalidTransitionError):
        validate_transition(AnalysisStatus.COMPLETE, AnalysisStatus.UPLOADING)


async def test_advance_matches_null_as_uploading(session, make_asset, load_asset):
    asset = await make_asset(status=None)
    async with session.begin():
        ok = await advance_status(session, asset.id, AnalysisStatus.UPLOADING, AnalysisStatus.GENERATING_THUMBNAILS)
    assert ok
    assert (await load_asset(asset.id)).analysis_status == "generating_thumbnails"


async def test_advance_is_conditional_on_expected(session, make_asset, load_asset):
    asset = await make_asset(status="scoring")
    async with session.begin():
        ok = await advance_status(
            session, asset.id, AnalysisStatus.EXTRACTING_METADATA, AnalysisStatus.GENERATING_EMBEDDING
        )
    assert ok is False
    assert (await load_asset(asset.id)).analysis_status == "scoring"


async def test_second_advance_loses(session, make_asset):
    asset = await make_asset(status="scoring")
    async with session.begin():
        first = await advance_status(session, asset.id, AnalysisStatus.SCORING, AnalysisStatus.COMPLETE)
        second = await advance_status(session, asset.id, AnalysisStatus.SCORING, AnalysisStatus.COMPLETE)
    assert (first, second) == (True, False)


async def test_force_status_still_checks_observed(session, make_asset, load_asset):
    asset = await make_asset(status="complete")
    async with session.begin():
        assert not await force_status(session, asset.id, AnalysisStatus.SCORING, AnalysisStatus.UPLOADING)
        assert await force_status(session, asset.id, AnalysisStatus.COMPLETE, AnalysisStatus.UPLOADING)
    assert (await load_asset(asset.id)).analysis_status == "uploading"
