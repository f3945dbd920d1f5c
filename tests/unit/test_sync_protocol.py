"""Tests for sync protocol dataclasses and enums."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from racelog_sync.core.identity import assign
from racelog_sync.sync.protocol import (
    DownloadResult,
    NoticeAction,
    RecordOutcome,
    ResolutionNotice,
    SyncOutcome,
    TransportError,
    UploadResult,
)


# ── RecordOutcome ─────────────────────────────────────────────────────────────


class TestRecordOutcome:
    def test_frozen(self) -> None:
        outcome = RecordOutcome(global_id=assign(), outcome=SyncOutcome.SYNCED)
        with pytest.raises(FrozenInstanceError):
            outcome.reason = "changed"  # type: ignore[misc]

    def test_from_dict_defaults(self) -> None:
        gid = assign()
        outcome = RecordOutcome.from_dict({"global_id": gid, "outcome": "conflicted"})

        assert outcome.outcome == SyncOutcome.CONFLICTED
        assert outcome.canonical_id is None
        assert outcome.reason == ""

    def test_unknown_outcome(self) -> None:
        with pytest.raises(ValueError):
            RecordOutcome.from_dict({"global_id": assign(), "outcome": "lost"})

    def test_upload_result_dict(self) -> None:
        gid = assign()
        result = UploadResult(
            batch_id="b-1",
            outcomes=[RecordOutcome(gid, SyncOutcome.REJECTED, reason="bib_number: too large")],
        )

        data = result.to_dict()

        assert data["outcomes"][0]["outcome"] == "rejected"
        assert UploadResult.from_dict(data) == result


# ── Download & notices ────────────────────────────────────────────────────────


class TestDownloadResult:
    def test_wire_form(self, factory) -> None:
        competition = factory.competition()
        result = DownloadResult(
            scope=f"competition:{competition.global_id}",
            records=[competition],
            redirects={assign(): competition.global_id},
        )

        data = result.to_dict()
        parsed = DownloadResult.from_dict(data)

        assert data["records"][0]["global_id"] == competition.global_id
        assert "local_id" not in data["records"][0]
        assert parsed.redirects == result.redirects
        assert parsed.records[0].same_content(competition)

    def test_missing_server_time(self) -> None:
        parsed = DownloadResult.from_dict({"scope": "race:x"})
        assert parsed.records == []
        assert parsed.server_time is not None


class TestResolutionNotice:
    def test_without_winner(self) -> None:
        notice = ResolutionNotice(entry_id=4, action=NoticeAction.RESOLVED, winner=None)

        data = notice.to_dict()

        assert data["winner"] is None
        assert ResolutionNotice.from_dict(data) == notice

    def test_superseded_is_tuple(self, factory) -> None:
        winner = factory.incident(assign())
        loser_id = assign()

        notice = ResolutionNotice.from_dict(
            {
                "entry_id": "9",
                "action": "merged",
                "winner": winner.to_wire(),
                "superseded": [loser_id],
            }
        )

        assert notice.entry_id == 9
        assert notice.superseded == (loser_id,)
        assert notice.conflict_id is None


# ── Errors & limits ───────────────────────────────────────────────────────────


class TestTransportError:
    def test_status_code(self) -> None:
        error = TransportError("Hub error 502", status_code=502)
        assert error.status_code == 502
        assert str(error) == "Hub error 502"
