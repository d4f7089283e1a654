import asyncio

import pytest

from siteproof.core.exceptions import NotFoundError, RejectedSyncError, TransientSyncError, ValidationError
from siteproof.models.form import EvidenceFile, SyncStatus
from siteproof.services.local_queue import LocalFormQueue
from siteproof.services.offline_sync import OfflineSyncService

from conftest import FakeGateway, make_form, make_header, preconstruction_fields, ts


def run(db_url, gateway, scenario, **kwargs):
    """Run ``scenario(service)`` against a fresh queue, then shut everything down."""
    async def main():
        queue = LocalFormQueue(db_url)
        await queue.init()
        service = OfflineSyncService(queue, gateway, **kwargs)
        try:
            return await scenario(service)
        finally:
            service.stop_auto_sync()
            await service.wait_for_sweeps()
            await queue.close()
    return asyncio.run(main())


async def queue_pending(service, count):
    return [await service.queue.save(make_form(created_at=ts(i))) for i in range(count)]


def test_capture_offline_queues_as_pending(db_url, gateway):
    """Forms captured without connectivity wait in the queue."""
    async def scenario(service):
        form = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        return form, await service.queue.list_unsynced()

    form, pending = run(db_url, gateway, scenario, online=False)
    assert form.sync_status == SyncStatus.PENDING
    assert form.server_id is None
    assert [f.local_id for f in pending] == [form.local_id]
    assert gateway.submitted == []


def test_capture_online_syncs_immediately(db_url, gateway):
    async def scenario(service):
        return await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())

    form = run(db_url, gateway, scenario)
    assert form.sync_status == SyncStatus.SYNCED
    assert form.server_id == f"srv-{form.local_id}"
    assert gateway.submitted == [form.local_id]


def test_validation_blocks_queuing(db_url, gateway):
    """A form missing a required check is rejected and never reaches the queue."""
    async def scenario(service):
        fields = preconstruction_fields()
        del fields["erosion_control_implemented"]
        with pytest.raises(ValidationError) as exc_info:
            await service.capture_form("earthworks_preconstruction", make_header(), fields)
        return exc_info.value, await service.queue.list()

    error, stored = run(db_url, gateway, scenario)
    assert error.field == "form_fields.erosion_control_implemented"
    assert stored == []
    assert gateway.submitted == []


def test_sync_all_is_single_flight(db_url):
    """A second sweep while one is running does not resend anything."""
    gateway = FakeGateway(delay=0.05)

    async def scenario(service):
        ids = await queue_pending(service, 3)
        first, second = await asyncio.gather(service.sync_all(), service.sync_all())
        return ids, first, second

    ids, first, second = run(db_url, gateway, scenario)
    assert first == {"synced": 3, "failed": 0, "total": 3, "skipped": False}
    assert second["skipped"] is True
    assert sorted(gateway.submitted) == sorted(ids)
    assert len(gateway.submitted) == 3


def test_partial_failure_is_isolated(db_url, gateway):
    """One failing record does not affect the records before or after it."""
    async def scenario(service):
        first, second, third = await queue_pending(service, 3)
        gateway.fail[second] = TransientSyncError("503 from upstream")
        results = await service.sync_all()
        return (first, second, third), results, [await service.queue.get(i) for i in (first, second, third)]

    ids, results, (a, b, c) = run(db_url, gateway, scenario)
    assert results == {"synced": 2, "failed": 1, "total": 3, "skipped": False}
    assert gateway.submitted == list(ids)
    assert a.sync_status == SyncStatus.SYNCED and a.server_id == f"srv-{ids[0]}"
    assert c.sync_status == SyncStatus.SYNCED and c.server_id == f"srv-{ids[2]}"
    assert b.sync_status == SyncStatus.FAILED
    assert b.server_id is None
    assert b.failure_kind == "transient"
    assert b.last_error == "503 from upstream"


def test_transient_failure_is_retried_on_next_sweep(db_url, gateway):
    async def scenario(service):
        (local_id,) = await queue_pending(service, 1)
        gateway.fail[local_id] = TransientSyncError("connection reset")
        await service.sync_all()
        del gateway.fail[local_id]
        results = await service.sync_all()
        return results, await service.queue.get(local_id)

    results, form = run(db_url, gateway, scenario)
    assert results["synced"] == 1
    assert form.sync_status == SyncStatus.SYNCED
    assert form.sync_attempts == 1
    assert form.last_error is None


def test_rejected_form_waits_for_manual_retry(db_url, gateway):
    """Server rejections are not blindly resent by the scheduler."""
    async def scenario(service):
        (local_id,) = await queue_pending(service, 1)
        gateway.fail[local_id] = RejectedSyncError("inspector_name too long", status_code=400)
        await service.sync_all()
        del gateway.fail[local_id]
        sweep = await service.sync_all()
        still_failed = await service.queue.get(local_id)
        retried = await service.retry(local_id)
        return sweep, still_failed, retried

    sweep, still_failed, retried = run(db_url, gateway, scenario)
    assert sweep["total"] == 0
    assert still_failed.sync_status == SyncStatus.FAILED
    assert still_failed.failure_kind == "rejected"
    assert retried.sync_status == SyncStatus.SYNCED
    assert len(gateway.submitted) == 2


def test_hung_gateway_times_out_and_releases_the_lock(db_url):
    gateway = FakeGateway(delay=1.0)

    async def scenario(service):
        (local_id,) = await queue_pending(service, 1)
        results = await service.sync_all()
        in_progress = service.sync_in_progress
        gateway.delay = 0
        again = await service.sync_all()
        return results, in_progress, again, await service.queue.get(local_id)

    results, in_progress, again, form = run(db_url, gateway, scenario, call_timeout=0.05)
    assert results["failed"] == 1
    assert in_progress is False
    assert again["skipped"] is False
    assert again["synced"] == 1
    assert form.sync_status == SyncStatus.SYNCED


def test_unexpected_gateway_error_marks_failed(db_url, gateway):
    async def scenario(service):
        (local_id,) = await queue_pending(service, 1)
        gateway.fail[local_id] = RuntimeError("bad payload mapping")
        results = await service.sync_all()
        return results, await service.queue.get(local_id)

    results, form = run(db_url, gateway, scenario)
    assert results["failed"] == 1
    assert form.sync_status == SyncStatus.FAILED
    assert form.failure_kind == "unknown"


def test_offline_sweep_is_skipped(db_url, gateway):
    async def scenario(service):
        await queue_pending(service, 2)
        return await service.sync_all()

    results = run(db_url, gateway, scenario, online=False)
    assert results["skipped"] is True
    assert gateway.submitted == []


def test_bounded_concurrency_syncs_everything(db_url):
    gateway = FakeGateway(delay=0.02)

    async def scenario(service):
        ids = await queue_pending(service, 5)
        return ids, await service.sync_all()

    ids, results = run(db_url, gateway, scenario, concurrency=3)
    assert results == {"synced": 5, "failed": 0, "total": 5, "skipped": False}
    assert sorted(gateway.submitted) == sorted(ids)


def test_status_events_are_published(db_url, gateway):
    events = []

    def broken_listener(event):
        raise RuntimeError("ui went away")

    async def scenario(service):
        service.subscribe(broken_listener)
        service.subscribe(events.append)
        form = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        service.unsubscribe(events.append)
        await service.update_form(form.local_id, header={"comments": "after unsubscribe"})
        return form

    form = run(db_url, gateway, scenario)
    assert [e.status for e in events] == [SyncStatus.PENDING, SyncStatus.SYNCED]
    assert all(e.local_id == form.local_id for e in events)
    assert events[-1].server_id == form.server_id


def test_evidence_is_uploaded_once(db_url, gateway):
    """Uploaded URLs are written back locally, so a retry never uploads again."""
    async def scenario(service):
        form = await service.capture_form(
            "earthworks_preconstruction",
            make_header(),
            preconstruction_fields(),
            [EvidenceFile(name="silt-fence.jpg", content_type="image/jpeg", data=b"jpeg")],
        )
        return form

    async def with_failure(service):
        service.online = False
        form = await scenario(service)
        gateway.fail[form.local_id] = TransientSyncError("timeout")
        service.online = True
        await service.sync_all()
        after_failure = await service.queue.get(form.local_id)
        del gateway.fail[form.local_id]
        await service.sync_all()
        return after_failure, await service.queue.get(form.local_id)

    after_failure, synced = run(db_url, gateway, with_failure)
    assert after_failure.sync_status == SyncStatus.FAILED
    assert after_failure.evidence_files[0].url == "https://files.test/silt-fence.jpg"
    assert synced.sync_status == SyncStatus.SYNCED
    assert len(gateway.uploaded) == 1


def test_update_form_resyncs_with_same_server_id(db_url, gateway):
    async def scenario(service):
        form = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        service.online = False
        edited = await service.update_form(form.local_id, header={"inspection_status": "approved"})
        service.online = True
        await service.sync_all()
        return form, edited, await service.queue.get(form.local_id)

    form, edited, resynced = run(db_url, gateway, scenario)
    assert edited.sync_status == SyncStatus.PENDING
    assert edited.server_id == form.server_id
    assert edited.inspection_status.value == "approved"
    assert resynced.sync_status == SyncStatus.SYNCED
    assert resynced.server_id == form.server_id
    assert gateway.submitted == [form.local_id, form.local_id]


def test_update_cannot_move_form_to_another_project(db_url, gateway):
    async def scenario(service):
        form = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        with pytest.raises(ValidationError):
            await service.update_form(form.local_id, header={"project_id": "proj-2"})

    run(db_url, gateway, scenario, online=False)


def test_unknown_local_ids_raise_not_found(db_url, gateway):
    async def scenario(service):
        with pytest.raises(NotFoundError):
            await service.retry("missing")
        with pytest.raises(NotFoundError):
            await service.update_form("missing", header={"comments": "x"})

    run(db_url, gateway, scenario)


def test_form_deleted_mid_sync_does_not_break_the_sweep(db_url, gateway):
    async def scenario(service):
        first, second = await queue_pending(service, 2)
        submit = gateway.submit

        async def delete_then_submit(form):
            # The user deletes the form while its remote write is in flight
            if form.local_id == first:
                await service.queue.delete(first)
            return await submit(form)

        gateway.submit = delete_then_submit
        results = await service.sync_all()
        return results, await service.queue.get(first), await service.queue.get(second)

    results, deleted, kept = run(db_url, gateway, scenario)
    assert results == {"synced": 1, "failed": 1, "total": 2, "skipped": False}
    assert deleted is None
    assert kept.sync_status == SyncStatus.SYNCED


def test_edit_during_in_flight_sync_is_sent_before_marking_synced(db_url):
    """A form edited mid-sync is only marked synced once the edited version reached the server."""
    gateway = FakeGateway()

    async def scenario(service):
        local_id = await service.queue.save(make_form(comments="v1"))
        submit = gateway.submit
        edits = []

        async def edit_then_submit(form):
            # The inspector saves an edit while the first remote write is in flight
            if not edits:
                edits.append(await service.update_form(local_id, header={"comments": "v2"}))
            return await submit(form)

        gateway.submit = edit_then_submit
        results = await service.sync_all()
        return edits[0], results, await service.queue.get(local_id)

    edited, results, form = run(db_url, gateway, scenario)
    assert edited.sync_status == SyncStatus.PENDING
    assert [f.comments for f in gateway.sent] == ["v1", "v2"]
    assert results == {"synced": 1, "failed": 0, "total": 1, "skipped": False}
    assert form.comments == "v2"
    assert form.sync_status == SyncStatus.SYNCED
    assert form.server_id == f"srv-{form.local_id}"


def test_sweep_sends_the_stored_version_not_the_listed_one(db_url, gateway):
    async def scenario(service):
        local_id = await service.queue.save(make_form(comments="v1"))
        listed = await service.queue.get(local_id)
        await service.queue.save(listed.model_copy(update={"comments": "v2"}))
        synced = await service.sync_one(listed)
        return synced, await service.queue.get(local_id)

    synced, form = run(db_url, gateway, scenario)
    assert synced is True
    assert [f.comments for f in gateway.sent] == ["v2"]
    assert form.sync_status == SyncStatus.SYNCED


def test_already_synced_form_is_not_resent(db_url, gateway):
    async def scenario(service):
        form = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        return await service.sync_one(form)

    assert run(db_url, gateway, scenario) is False
    assert len(gateway.submitted) == 1


@pytest.mark.parametrize("concurrency", [1, 3])
def test_local_write_error_is_isolated_to_its_form(db_url, concurrency):
    """A queue error on one form neither aborts the sweep nor releases the lock early."""
    gateway = FakeGateway(delay=0.02)

    async def scenario(service):
        first, second, third = await queue_pending(service, 3)
        update_sync_status = service.queue.update_sync_status

        async def flaky(local_id, status, *args, **kwargs):
            if local_id == second and status == SyncStatus.SYNCED:
                raise RuntimeError("database is locked")
            return await update_sync_status(local_id, status, *args, **kwargs)

        service.queue.update_sync_status = flaky
        results = await service.sync_all()
        in_progress = service.sync_in_progress
        service.queue.update_sync_status = update_sync_status
        again = await service.sync_all()
        return (first, second, third), results, in_progress, again, await service.queue.get(second)

    ids, results, in_progress, again, form = run(db_url, gateway, scenario, concurrency=concurrency)
    assert results == {"synced": 2, "failed": 1, "total": 3, "skipped": False}
    assert sorted(gateway.submitted[:3]) == sorted(ids)
    assert in_progress is False
    assert again == {"synced": 1, "failed": 0, "total": 1, "skipped": False}
    assert form.sync_status == SyncStatus.SYNCED


def test_auto_sync_start_and_stop(db_url, gateway):
    async def scenario(service):
        (local_id,) = await queue_pending(service, 1)
        service.start_auto_sync(interval_seconds=60)
        await asyncio.sleep(0.05)
        await service.wait_for_sweeps()
        running = service.auto_sync_running
        service.stop_auto_sync()
        service.stop_auto_sync()
        return running, service.auto_sync_running, await service.queue.get(local_id)

    running, after_stop, form = run(db_url, gateway, scenario)
    assert running is True
    assert after_stop is False
    assert form.sync_status == SyncStatus.SYNCED


def test_stop_auto_sync_when_never_started_is_a_no_op(db_url, gateway):
    async def scenario(service):
        service.stop_auto_sync()
        return service.auto_sync_running

    assert run(db_url, gateway, scenario) is False


def test_coming_back_online_triggers_a_sweep(db_url, gateway):
    async def scenario(service):
        service.start_auto_sync(interval_seconds=60)
        await asyncio.sleep(0.01)
        await service.wait_for_sweeps()
        (local_id,) = await queue_pending(service, 1)
        sweep = service.set_online(True)
        results = await sweep
        repeat = service.set_online(True)
        return results, repeat, await service.queue.get(local_id)

    results, repeat, form = run(db_url, gateway, scenario, online=False)
    assert results["synced"] == 1
    assert repeat is None
    assert form.sync_status == SyncStatus.SYNCED


def test_cleanup_removes_acknowledged_synced_forms(db_url, gateway):
    async def scenario(service):
        synced = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        service.online = False
        pending = await service.capture_form("earthworks_preconstruction", make_header(), preconstruction_fields())
        removed = await service.cleanup_synced(retention_days=0)
        status = await service.status()
        return synced, pending, removed, status, await service.queue.list()

    synced, pending, removed, status, remaining = run(db_url, gateway, scenario)
    assert removed == 1
    assert [f.local_id for f in remaining] == [pending.local_id]
    assert status["counts"] == {"pending": 1, "synced": 0, "failed": 0}
    assert status["online"] is False
