"""Tests for the edge sync cycle."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock

from racelog_sync.core.identity import assign
from racelog_sync.core.record import RecordKind, RecordState
from racelog_sync.storage.sqlite_queue import QueueState
from racelog_sync.sync.protocol import (
    DownloadResult,
    HubTransport,
    NoticeAction,
    ResolutionNotice,
    UploadResult,
)
from racelog_sync.sync.sync_engine import CycleStatus

NODE_A = "edge-a"
NODE_B = "edge-b"


async def _log_incident(edge, factory, bib: int = 42):
    race_id = assign()
    payload = factory.incident(race_id, bib=bib).payload
    return await edge.writer.create(RecordKind.INCIDENT, payload)


async def _entry_state(edge, global_id: str) -> QueueState:
    [entry] = await edge.storage.find_queue_entries(global_id=global_id)
    return entry.state


# ── Cycle status ─────────────────────────────────────────────────────


class TestCycleStatus:
    async def test_offline_hub_defers(self, make_edge, flaky_hub, factory) -> None:
        edge = await make_edge(NODE_A, transport=flaky_hub)
        record = await _log_incident(edge, factory)
        flaky_hub.online = False

        report = await edge.engine.run_cycle("timer")

        assert report.status == CycleStatus.OFFLINE
        assert report.finished_at is not None
        assert flaky_hub.uploads == 0
        assert await _entry_state(edge, record.global_id) == QueueState.PENDING
        assert edge.context.last_successful_cycle_at is None

    async def test_completed_cycle(self, make_edge, hub_storage, factory) -> None:
        edge = await make_edge(NODE_A)
        record = await _log_incident(edge, factory)

        report = await edge.engine.run_cycle("manual")

        assert report.status == CycleStatus.COMPLETED
        assert report.uploaded == 1
        assert report.synced == 1
        assert await _entry_state(edge, record.global_id) == QueueState.SYNCED
        assert await hub_storage.get_record(record.global_id) is not None
        assert edge.context.last_successful_cycle_at is not None
        assert await hub_storage.get_node(NODE_A) is not None

    async def test_second_trigger_coalesces(self, make_edge) -> None:
        edge = await make_edge(NODE_A)

        async with edge.context.cycle_lock:
            report = await edge.engine.run_cycle("reconnect")

        assert report.status == CycleStatus.COALESCED
        assert report.trigger == "reconnect"

    async def test_exchange_timeout(self, make_edge, flaky_hub) -> None:
        flaky_hub.delay = 5.0
        edge = await make_edge(NODE_A, transport=flaky_hub, exchange_timeout=0.05)

        report = await edge.engine.run_cycle()

        assert report.status == CycleStatus.TRANSPORT_ERROR
        assert report.error == "TimeoutError"
        assert edge.context.last_successful_cycle_at is None

    async def test_report_serializes(self, make_edge) -> None:
        edge = await make_edge(NODE_A)

        data = (await edge.engine.run_cycle("manual")).to_dict()

        assert data["status"] == "completed"
        assert data["trigger"] == "manual"
        assert data["finished_at"] is not None


# ── Upload ───────────────────────────────────────────────────────────


class TestUpload:
    async def test_failure_before_hub_releases_entries(
        self, make_edge, flaky_hub, hub_storage, factory
    ) -> None:
        edge = await make_edge(NODE_A, transport=flaky_hub)
        record = await _log_incident(edge, factory)
        flaky_hub.fail_upload_before = True

        report = await edge.engine.run_cycle()

        assert report.status == CycleStatus.TRANSPORT_ERROR
        assert report.error == "connection reset"
        assert report.released == 1
        [entry] = await edge.storage.find_queue_entries(global_id=record.global_id)
        assert entry.state == QueueState.PENDING
        assert entry.last_error == "connection reset"
        assert await hub_storage.get_record(record.global_id) is None

        flaky_hub.fail_upload_before = False
        retry = await edge.engine.run_cycle()

        assert retry.status == CycleStatus.COMPLETED
        assert retry.synced == 1

    async def test_lost_response_recovered_from_batch_outcomes(
        self, make_edge, flaky_hub, factory
    ) -> None:
        edge = await make_edge(NODE_A, transport=flaky_hub)
        record = await _log_incident(edge, factory)
        flaky_hub.fail_upload_after = True

        report = await edge.engine.run_cycle()

        assert report.status == CycleStatus.TRANSPORT_ERROR
        assert report.synced == 1
        assert report.released == 0
        assert await _entry_state(edge, record.global_id) == QueueState.SYNCED

    async def test_reupload_after_unknown_outcome_is_idempotent(
        self, make_edge, flaky_hub, hub_storage, factory
    ) -> None:
        edge = await make_edge(NODE_A, transport=flaky_hub)
        record = await _log_incident(edge, factory)
        flaky_hub.fail_upload_after = True
        flaky_hub.fail_outcomes = True

        first = await edge.engine.run_cycle()
        assert first.released == 1

        flaky_hub.fail_upload_after = False
        flaky_hub.fail_outcomes = False
        second = await edge.engine.run_cycle()

        assert second.status == CycleStatus.COMPLETED
        assert second.synced == 1
        assert second.conflicted == 0
        assert (await hub_storage.count_records())["active"] == 1
        assert (await hub_storage.count_conflicts())["open"] == 0
        assert await _entry_state(edge, record.global_id) == QueueState.SYNCED

    async def test_rejected_record_fails_without_blocking_others(
        self, make_edge, factory
    ) -> None:
        edge = await make_edge(NODE_A)
        good = await _log_incident(edge, factory)
        valid = factory.incident(assign(), bib=7)
        bad = replace(valid, payload={**valid.payload, "bib_number": 0})
        await edge.storage.add_record(bad)
        await edge.queue.enqueue(bad.global_id, bad.revision, "hub")

        report = await edge.engine.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        assert report.synced == 1
        assert report.rejected == 1
        [entry] = await edge.storage.find_queue_entries(global_id=bad.global_id)
        assert entry.state == QueueState.FAILED
        assert "bib_number" in entry.last_error
        assert await _entry_state(edge, good.global_id) == QueueState.SYNCED

    async def test_missing_local_record_fails_entry(self, make_edge) -> None:
        edge = await make_edge(NODE_A)
        gid = assign()
        await edge.queue.enqueue(gid, 1, "hub")

        report = await edge.engine.run_cycle()

        assert report.rejected == 1
        assert report.uploaded == 0
        [entry] = await edge.storage.find_queue_entries(global_id=gid)
        assert entry.state == QueueState.FAILED
        assert entry.last_error == "record missing locally"

    async def test_uploads_in_batches(self, make_edge, flaky_hub, factory) -> None:
        edge = await make_edge(NODE_A, transport=flaky_hub, batch_size=2)
        for bib in range(1, 6):
            await _log_incident(edge, factory, bib=bib)

        report = await edge.engine.run_cycle()

        assert report.uploaded == 5
        assert report.synced == 5
        assert flaky_hub.uploads == 3

    async def test_merge_outcome_folds_local_copy(self, make_edge, factory) -> None:
        edge_a = await make_edge(NODE_A)
        edge_b = await make_edge(NODE_B)
        race_id = assign()
        payload = factory.incident(race_id).payload
        first = await edge_a.writer.create(RecordKind.INCIDENT, payload)
        await edge_a.engine.run_cycle()
        second = await edge_b.writer.create(RecordKind.INCIDENT, payload)

        report = await edge_b.engine.run_cycle()

        # edge-a sorts before edge-b, so the first record wins
        assert report.merged == 1
        local = await edge_b.storage.get_record(second.global_id)
        assert local is not None
        assert local.state == RecordState.MERGED
        assert local.merged_into == first.global_id
        assert await edge_b.storage.resolve_redirect(second.global_id) == first.global_id

    async def test_start_recovers_in_transit_entries(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        record = await _log_incident(edge, factory)
        await edge.queue.claim("hub")

        await edge.engine.start()

        assert await _entry_state(edge, record.global_id) == QueueState.PENDING
        report = await edge.engine.run_cycle()
        assert report.synced == 1


# ── Download ─────────────────────────────────────────────────────────


class TestDownload:
    async def test_scope_download(self, make_edge, race_tree) -> None:
        race = race_tree["race"]
        edge = await make_edge(NODE_A, scopes=(f"race:{race.global_id}",))

        report = await edge.engine.run_cycle()

        assert report.downloaded == 4
        local = await edge.storage.get_record(race.global_id)
        assert local is not None
        assert local.payload == race.payload
        # Downloaded records are not queued back to the hub
        assert await edge.storage.find_queue_entries() == []

    async def test_unchanged_records_are_not_reapplied(self, make_edge, race_tree) -> None:
        race = race_tree["race"]
        edge = await make_edge(NODE_A, scopes=(f"race:{race.global_id}",))
        await edge.engine.run_cycle()

        report = await edge.engine.run_cycle()

        assert report.downloaded == 0

    async def test_newer_hub_version_replaces_local(
        self, make_edge, hub_storage, race_tree
    ) -> None:
        race = race_tree["race"]
        location = race_tree["location"]
        edge = await make_edge(NODE_A, scopes=(f"race:{race.global_id}",))
        await edge.engine.run_cycle()
        await hub_storage.update_record(
            location.with_payload({**location.payload, "name": "Col de la Forclaz"})
        )

        report = await edge.engine.run_cycle()

        assert report.downloaded == 1
        local = await edge.storage.get_record(location.global_id)
        assert local is not None
        assert local.payload["name"] == "Col de la Forclaz"
        assert local.revision == 2

    async def test_pending_local_version_is_kept(
        self, make_edge, hub, hub_storage, race_tree
    ) -> None:
        race = race_tree["race"]
        location = race_tree["location"]
        scope = f"race:{race.global_id}"
        edge = await make_edge(NODE_A, scopes=(scope,))
        await edge.engine.run_cycle()
        await edge.writer.update(location.global_id, {"name": "Summit ridge"})
        await hub_storage.update_record(
            location.with_payload({**location.payload, "name": "Col de la Forclaz"})
        )

        applied = await edge.engine.apply_download(await hub.download_scope(scope, NODE_A))

        assert applied == 0
        local = await edge.storage.get_record(location.global_id)
        assert local is not None
        assert local.payload["name"] == "Summit ridge"

    async def test_redirects_fold_local_records(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        race_id = assign()
        loser = factory.location(race_id)
        winner = factory.location(race_id, origin=NODE_B)
        incident = factory.incident(race_id, location_id=loser.global_id)
        for record in (loser, winner, incident):
            await edge.storage.add_record(record)

        await edge.engine.apply_download(
            DownloadResult(scope=f"race:{race_id}", redirects={loser.global_id: winner.global_id})
        )

        merged = await edge.storage.get_record(loser.global_id)
        assert merged is not None
        assert merged.state == RecordState.MERGED
        assert merged.merged_into == winner.global_id
        repointed = await edge.storage.get_record(incident.global_id)
        assert repointed is not None
        assert repointed.payload["race_location_id"] == winner.global_id

    async def test_invalid_downloaded_record_is_skipped(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        valid = factory.participation(assign())
        invalid = replace(valid, payload={**valid.payload, "bib_number": -1})

        applied = await edge.engine.apply_download(
            DownloadResult(scope="race:x", records=[invalid])
        )

        assert applied == 0
        assert await edge.storage.get_record(invalid.global_id) is None


# ── Resolution notices ───────────────────────────────────────────────


class TestResolutionNotices:
    async def test_notices_are_applied_then_acknowledged(self, make_edge, factory) -> None:
        transport = AsyncMock(spec=HubTransport)
        transport.health_check.return_value = True
        transport.register_node.return_value = {}
        transport.ack_resolutions.return_value = 1
        transport.upload_batch.return_value = UploadResult(batch_id="unused")
        race_id = assign()
        loser = factory.incident(race_id)
        winner = factory.incident(race_id, origin=NODE_B)
        transport.pull_resolutions.return_value = [
            ResolutionNotice(
                entry_id=7,
                action=NoticeAction.MERGED,
                winner=winner,
                superseded=(loser.global_id,),
            )
        ]
        edge = await make_edge(NODE_A, transport=transport)
        await edge.storage.add_record(loser)

        report = await edge.engine.run_cycle()

        assert report.resolutions_applied == 1
        transport.ack_resolutions.assert_awaited_once_with(NODE_A, [7])
        stored_winner = await edge.storage.get_record(winner.global_id)
        assert stored_winner is not None and stored_winner.state == RecordState.ACTIVE
        stored_loser = await edge.storage.get_record(loser.global_id)
        assert stored_loser is not None
        assert stored_loser.merged_into == winner.global_id

    async def test_no_ack_without_notices(self, make_edge) -> None:
        transport = AsyncMock(spec=HubTransport)
        transport.health_check.return_value = True
        transport.register_node.return_value = {}
        transport.pull_resolutions.return_value = []
        edge = await make_edge(NODE_A, transport=transport)

        report = await edge.engine.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        transport.ack_resolutions.assert_not_awaited()

    async def test_notice_retires_conflicted_entry(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        record = await _log_incident(edge, factory)
        [entry] = await edge.queue.claim("hub")
        await edge.queue.mark_conflicted(entry, "cf-1")

        await edge.engine.apply_notice(
            ResolutionNotice(
                entry_id=1,
                action=NoticeAction.RESOLVED,
                winner=record.with_payload({**record.payload, "decision": "penalty_applied"}),
                conflict_id="cf-1",
            )
        )

        assert await _entry_state(edge, record.global_id) == QueueState.SYNCED
        local = await edge.storage.get_record(record.global_id)
        assert local is not None
        assert local.payload["decision"] == "penalty_applied"
        assert local.revision == 2

    async def test_older_winner_does_not_overwrite(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        record = await _log_incident(edge, factory)
        await edge.writer.update(record.global_id, {"decision": "penalty_applied"})

        await edge.engine.apply_notice(
            ResolutionNotice(entry_id=1, action=NoticeAction.MERGED, winner=record)
        )

        local = await edge.storage.get_record(record.global_id)
        assert local is not None
        assert local.payload["decision"] == "penalty_applied"

    async def test_pending_edit_at_same_revision_is_kept(self, make_edge, factory) -> None:
        edge = await make_edge(NODE_A)
        record = await _log_incident(edge, factory)
        [entry] = await edge.queue.claim("hub")
        await edge.queue.mark_conflicted(entry, "cf-1")
        await edge.writer.update(record.global_id, {"decision_notes": "bib covered by jacket"})
        resolved = record.with_payload({**record.payload, "decision": "rejected"})

        await edge.engine.apply_notice(
            ResolutionNotice(
                entry_id=1, action=NoticeAction.RESOLVED, winner=resolved, conflict_id="cf-1"
            )
        )

        local = await edge.storage.get_record(record.global_id)
        assert local is not None
        assert local.revision == 2
        assert local.payload["decision_notes"] == "bib covered by jacket"
        assert await edge.queue.has_pending_upload(record.global_id, "hub")
