"""Tests for EventStore — CRUD, ordering and dirty tracking with in-memory SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from conftest import T0, at, drink, water
from waterline.core.storage.encryption import PayloadCodec
from waterline.core.storage.models import (
    Event,
    NegativePayload,
    PositivePayload,
    Preset,
    SessionSummary,
    UserSettings,
)
from waterline.core.storage.repository import (
    ConstraintViolation,
    EventStore,
    LocalStorageFailure,
    RepositoryError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    from_iso,
    to_iso,
)


def _summary(**overrides) -> SessionSummary:
    defaults = dict(
        total_positive=2,
        total_negative=1,
        total_positive_weight=2.0,
        total_negative_volume=8.0,
        duration_seconds=3600.0,
        adherence=0.5,
        final_balance=1.0,
    )
    defaults.update(overrides)
    return SessionSummary(**defaults)


class TestTimestamps:
    def test_iso_is_fixed_width_utc(self):
        a = to_iso(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
        b = to_iso(datetime(2026, 3, 14, 20, 0, 0, 1, tzinfo=timezone.utc))
        assert len(a) == len(b)
        assert a < b

    def test_non_utc_offsets_normalize(self):
        local = datetime(2026, 3, 14, 22, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(local) == to_iso(T0)
        assert from_iso(to_iso(local)) == T0


class TestProfile:
    def test_get_or_create_is_idempotent(self, store):
        p1 = store.get_or_create_profile("u-key")
        p2 = store.get_or_create_profile("u-key")
        assert p1.id == p2.id
        assert p1.settings == UserSettings()

    def test_get_profile_empty(self, store):
        assert store.get_profile() is None

    def test_update_settings_persists(self, store, profile):
        store.update_settings(profile.id, UserSettings(due_every_n=3, warning_threshold=4))
        reloaded = store.get_profile()
        assert reloaded.settings.due_every_n == 3
        assert reloaded.settings.warning_threshold == 4


class TestSessions:
    def test_create_and_get(self, store, profile):
        session = store.create_session(profile.id, T0)
        loaded = store.get_session(session.id)
        assert loaded.start_time == T0
        assert loaded.is_active
        assert loaded.end_time is None
        assert loaded.dirty
        assert loaded.revision == 1

    def test_second_active_session_rejected(self, store, profile, session):
        with pytest.raises(SessionAlreadyActiveError):
            store.create_session(profile.id, at(5))

    def test_unknown_user_is_a_constraint_violation(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_session("missing-user", T0)
        assert not isinstance(exc_info.value, SessionAlreadyActiveError)

    def test_end_session_caches_summary_and_frees_slot(self, store, profile, session):
        store.mark_clean("session", "s1", 1)
        store.end_session("s1", at(90), _summary())

        ended = store.get_session("s1")
        assert not ended.is_active
        assert ended.end_time == at(90)
        assert ended.summary == _summary()
        assert ended.dirty
        assert ended.revision == 2
        assert store.active_session(profile.id) is None

        # A new session can start now.
        store.create_session(profile.id, at(100))

    def test_update_session_summary_bumps_revision(self, store, session):
        store.end_session("s1", at(90), _summary())
        store.update_session_summary("s1", _summary(final_balance=2.0))
        loaded = store.get_session("s1")
        assert loaded.summary.final_balance == 2.0
        assert loaded.revision == 3

    def test_list_sessions_newest_first(self, store, profile, session):
        store.end_session("s1", at(60), _summary())
        store.create_session(profile.id, at(120), session_id="s2")
        assert [s.id for s in store.list_sessions(profile.id)] == ["s2", "s1"]
        assert len(store.list_sessions(profile.id, limit=1)) == 1


class TestEvents:
    def test_append_returns_generated_id(self, store, session):
        eid = store.append("s1", Event(id="", session_id="s1", timestamp=T0, payload=PositivePayload()))
        assert eid
        assert store.get_event(eid).payload == PositivePayload()

    def test_append_marks_only_the_event_dirty(self, store, session):
        store.mark_clean("session", "s1", 1)
        store.append("s1", drink("e1", 1))
        assert not store.get_session("s1").dirty
        assert store.get_event("e1").dirty

    def test_append_to_missing_session_raises(self, store, profile):
        with pytest.raises(SessionNotFoundError):
            store.append("nope", drink("e1", 1, session_id="nope"))

    def test_append_with_mismatched_session_raises(self, store, session):
        with pytest.raises(ValueError, match="belongs to session"):
            store.append("s1", drink("e1", 1, session_id="other"))

    def test_events_ordered_by_timestamp_then_id(self, store, session):
        store.append("s1", drink("b", 5))
        store.append("s1", water("z", 1))
        store.append("s1", drink("a", 5))
        assert [e.id for e in store.events_for("s1")] == ["z", "a", "b"]

    def test_events_for_returns_fresh_list(self, store, session):
        store.append("s1", drink("e1", 1))
        first = store.events_for("s1")
        first.clear()
        assert len(store.events_for("s1")) == 1

    def test_payload_and_source_round_trip(self, store, session):
        payload = PositivePayload(weight=1.5, drink_type="wine", size_oz=6.0, abv=13.5, preset_id="p1")
        event = Event(id="e1", session_id="s1", timestamp=at(3), payload=payload, source="watch")
        store.append("s1", event)
        loaded = store.get_event("e1")
        assert loaded.payload == payload
        assert loaded.source == "watch"
        assert loaded.timestamp == at(3)

    def test_delete(self, store, session):
        store.append("s1", drink("e1", 1))
        assert store.delete("e1") is True
        assert store.get_event("e1") is None
        assert store.delete("e1") is False

    def test_replace_keeps_id_and_timestamp(self, store, session):
        store.append("s1", drink("e1", 7))
        store.mark_clean("event", "e1", 1)

        assert store.replace("e1", NegativePayload(volume_oz=12.0)) is True

        loaded = store.get_event("e1")
        assert loaded.kind == "negative"
        assert loaded.payload == NegativePayload(volume_oz=12.0)
        assert loaded.timestamp == at(7)
        assert loaded.dirty
        assert loaded.revision == 2

    def test_replace_missing_returns_false(self, store, session):
        assert store.replace("nope", PositivePayload()) is False

    def test_last_event_time(self, store, session):
        assert store.last_event_time("s1") is None
        store.append("s1", drink("e1", 30))
        store.append("s1", water("e2", 10))
        assert store.last_event_time("s1") == at(30)

    def test_encrypted_payloads_are_opaque_in_sqlite(self, db, profile):
        codec = PayloadCodec(Fernet.generate_key().decode())
        encrypted = EventStore(db, codec)
        encrypted.create_session(profile.id, T0, session_id="s9")
        encrypted.append("s9", drink("e1", 1, session_id="s9"))

        raw = db.connection.execute("SELECT payload FROM events WHERE id = 'e1'").fetchone()[0]
        assert "weight" not in raw
        assert encrypted.get_event("e1").payload.weight == 1.0

    def test_unreadable_payload_is_a_storage_failure(self, db, profile):
        codec = PayloadCodec(Fernet.generate_key().decode())
        encrypted = EventStore(db, codec)
        encrypted.create_session(profile.id, T0, session_id="s9")
        encrypted.append("s9", drink("e1", 1, session_id="s9"))

        # Same rows, wrong key.
        other = EventStore(db, PayloadCodec(Fernet.generate_key().decode()))
        with pytest.raises(LocalStorageFailure, match="e1"):
            other.events_for("s9")
        with pytest.raises(RepositoryError):
            other.get_event("e1")


class TestPresets:
    def test_save_and_list_by_name(self, store, profile):
        store.save_preset(Preset(id="p2", user_id=profile.id, name="Wine", drink_type="wine"))
        store.save_preset(Preset(id="p1", user_id=profile.id, name="IPA", size_oz=16.0))
        assert [p.name for p in store.list_presets(profile.id)] == ["IPA", "Wine"]

    def test_save_existing_updates_and_bumps_revision(self, store, profile):
        pid = store.save_preset(Preset(id="", user_id=profile.id, name="IPA"))
        store.mark_clean("preset", pid, 1)
        store.save_preset(Preset(id=pid, user_id=profile.id, name="Hazy IPA", weight=1.4))
        loaded = store.get_preset(pid)
        assert loaded.name == "Hazy IPA"
        assert loaded.weight == 1.4
        assert loaded.dirty
        assert loaded.revision == 2

    def test_delete_preset_leaves_events_untouched(self, store, profile, session):
        pid = store.save_preset(Preset(id="", user_id=profile.id, name="IPA", weight=1.3))
        preset = store.get_preset(pid)
        store.append("s1", Event(id="e1", session_id="s1", timestamp=T0, payload=preset.to_payload()))

        assert store.delete_preset(pid) is True
        assert store.get_preset(pid) is None
        event = store.get_event("e1")
        assert event.payload.preset_id == pid
        assert event.payload.weight == 1.3


class TestDirtyTracking:
    def test_pending_by_kind(self, store, profile, session):
        store.append("s1", drink("e2", 2))
        store.append("s1", drink("e1", 1))
        store.save_preset(Preset(id="p1", user_id=profile.id, name="IPA"))

        assert [s.id for s in store.pending("session")] == ["s1"]
        assert [e.id for e in store.pending("event")] == ["e1", "e2"]
        assert [p.id for p in store.pending("preset")] == ["p1"]
        assert store.count_pending() == 4

    def test_invalid_kind_raises(self, store):
        with pytest.raises(RepositoryError, match="Invalid record kind"):
            store.pending("user")
        with pytest.raises(RepositoryError):
            store.mark_clean("user", "x", 1)

    def test_mark_clean_at_snapshot_revision(self, store, session):
        store.append("s1", drink("e1", 1))
        assert store.mark_clean("event", "e1", 1) is True
        assert store.pending("event") == []

    def test_write_after_snapshot_stays_dirty(self, store, session):
        store.append("s1", drink("e1", 1))
        snapshot = store.pending("event")[0]

        store.replace("e1", PositivePayload(weight=2.0))

        assert store.mark_clean("event", "e1", snapshot.revision) is False
        assert [e.id for e in store.pending("event")] == ["e1"]

    def test_mark_clean_deleted_record_is_noop(self, store, session):
        store.append("s1", drink("e1", 1))
        store.delete("e1")
        assert store.mark_clean("event", "e1", 1) is False


class TestDeleteAllUserData:
    def test_removes_everything_for_user(self, store, profile, session):
        store.append("s1", drink("e1", 1))
        store.append("s1", water("e2", 2))
        store.save_preset(Preset(id="p1", user_id=profile.id, name="IPA"))

        counts = store.delete_all_user_data("test-user")

        assert counts == {"sessions": 1, "events": 2, "presets": 1}
        assert store.get_profile() is None
        assert store.count_pending() == 0

    def test_unknown_user_is_noop(self, store):
        assert store.delete_all_user_data("nobody") == {"sessions": 0, "events": 0, "presets": 0}
