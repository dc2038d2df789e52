from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.jobs.queue import JobDispatcher
from app.models import SystemIncident
from app.services.embedding_service import EmbeddingServiceError


async def _incidents(session_factory):
    async with session_factory() as s:
        return (await s.execute(select(SystemIncident))).scalars().all()


async def test_transient_failure_is_retried(ctx, dispatcher, make_asset, load_asset):
    ctx.embedding_service.embed_asset.side_effect = [EmbeddingServiceError("timeout"), [1.0, 0.0, 0.0]]
    asset = await make_asset(status="generating_embedding")

    await dispatcher.enqueue("generate_embedding", asset.id)
    results = await dispatcher.drain()

    assert [r.stage for r in results if r.advanced] == ["GenerateEmbeddingStage"]
    assert ctx.embedding_service.embed_asset.call_count == 2
    assert (await load_asset(asset.id)).analysis_status == "scoring"


async def test_exhausted_retries_open_job_incident(ctx, session_factory, make_asset, load_asset):
    sleep = AsyncMock()
    dispatcher = JobDispatcher(ctx, max_tries=3, backoff=[60, 300, 900], sleep=sleep)
    ctx.embedding_service.embed_asset.side_effect = EmbeddingServiceError("service down")
    asset = await make_asset(status="generating_embedding")

    await dispatcher.enqueue("generate_embedding", asset.id)
    await dispatcher.drain()

    assert ctx.embedding_service.embed_asset.call_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [60.0, 300.0]
    assert (await load_asset(asset.id)).analysis_status == "generating_embedding"

    (incident,) = await _incidents(session_factory)
    assert incident.source_type == "job"
    assert incident.source_id == asset.id
    assert incident.retryable is True
    assert incident.metadata_["job"] == "generate_embedding"
    assert incident.metadata_["attempts"] == 3
    assert "service down" in incident.metadata_["error"]


async def test_permanent_failure_is_not_retried(ctx, dispatcher, session_factory, make_asset):
    asset = await make_asset(status="uploading", mime_type=None)

    await dispatcher.enqueue("process_asset", asset.id)
    await dispatcher.drain()

    (incident,) = await _incidents(session_factory)
    assert incident.retryable is False
    assert incident.metadata_["attempts"] == 1


async def test_rejected_metadata_write_is_not_retried(ctx, dispatcher, session_factory, make_asset, load_asset, thumbnail):
    asset = await make_asset(
        status="extracting_metadata",
        thumbnail_status="completed",
        metadata={
            "thumbnails": {"medium": {"path": thumbnail}},
            "dominant_colors": [{"hex": "#000000", "coverage": 1.0}],
            "_manual_overrides": ["dominant_colors"],
        },
    )
    await dispatcher.enqueue("extract_metadata", asset.id)
    await dispatcher.drain()

    assert ctx.color_service.analyze_path.call_count == 1
    assert (await load_asset(asset.id)).analysis_status == "extracting_metadata"
    (incident,) = await _incidents(session_factory)
    assert incident.title == "Job extract_metadata failed"
    assert incident.retryable is False
    assert incident.metadata_["attempts"] == 1


async def test_repeated_failures_share_one_open_incident(ctx, dispatcher, session_factory, make_asset):
    ctx.embedding_service.embed_asset.side_effect = EmbeddingServiceError("down")
    asset = await make_asset(status="generating_embedding")

    for _ in range(2):
        await dispatcher.enqueue("generate_embedding", asset.id)
        await dispatcher.drain()

    assert len(await _incidents(session_factory)) == 1


async def test_unknown_job_name_is_rejected(dispatcher):
    with pytest.raises(KeyError):
        await dispatcher.enqueue("render_video", "a1")


async def test_workers_process_queue(ctx, dispatcher, make_asset, load_asset):
    asset = await make_asset(status="uploading")
    dispatcher.start()
    await dispatcher.enqueue("process_asset", asset.id)
    await dispatcher.queue.join()
    assert (await load_asset(asset.id)).analysis_status == "generating_thumbnails"
