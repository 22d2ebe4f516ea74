from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from talentforge.app.errors import TransitionRejected
from talentforge.app.models import (
    InterviewStatus,
    RecordingStatus,
    TranscriptStatus,
    WebhookEventStatus,
)
from talentforge.app.payloads import RecordingFile
from talentforge.app.services.retry import classify, compute_next_retry
from talentforge.app.services.workflow import (
    advance_recording,
    check_interview_transition,
    check_transcript_transition,
    select_primary_recording,
)

NOW = datetime(2026, 3, 2, 9, 30)


@pytest.mark.parametrize(
    ("attempts", "minutes"),
    [(0, 5), (1, 15), (2, 60), (7, 60)],
)
def test_compute_next_retry_backoff(attempts: int, minutes: int) -> None:
    assert compute_next_retry(attempts, now=NOW) == NOW + timedelta(minutes=minutes)


def test_classify_schedules_retry_until_budget_spent() -> None:
    first = classify(1, 3, now=NOW)
    second = classify(2, 3, now=NOW)
    third = classify(3, 3, now=NOW)

    assert first.status == WebhookEventStatus.failed
    assert first.next_retry_at == NOW + timedelta(minutes=5)
    assert second.next_retry_at == NOW + timedelta(minutes=15)
    assert third.status == WebhookEventStatus.dead_letter
    assert third.next_retry_at is None


def test_interview_transitions_follow_table() -> None:
    assert check_interview_transition(InterviewStatus.scheduled, InterviewStatus.in_progress)
    assert check_interview_transition(InterviewStatus.in_progress, InterviewStatus.completed)
    assert not check_interview_transition(InterviewStatus.completed, InterviewStatus.completed)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (InterviewStatus.scheduled, InterviewStatus.completed),
        (InterviewStatus.completed, InterviewStatus.in_progress),
        (InterviewStatus.completed, InterviewStatus.scheduled),
        (InterviewStatus.cancelled, InterviewStatus.in_progress),
    ],
)
def test_interview_transition_rejections(current, target) -> None:
    with pytest.raises(TransitionRejected) as exc_info:
        check_interview_transition(current, target)
    assert exc_info.value.current == current.value
    assert exc_info.value.attempted == target.value


def test_transcript_completed_is_terminal() -> None:
    assert check_transcript_transition(TranscriptStatus.failed, TranscriptStatus.pending)
    with pytest.raises(TransitionRejected):
        check_transcript_transition(TranscriptStatus.completed, TranscriptStatus.pending)


def test_recording_progression_is_monotonic() -> None:
    assert advance_recording(RecordingStatus.none, RecordingStatus.in_progress) == (
        RecordingStatus.in_progress
    )
    assert advance_recording(RecordingStatus.processing, RecordingStatus.in_progress) is None
    assert advance_recording(RecordingStatus.completed, RecordingStatus.processing) is None


def test_primary_recording_prefers_screen_share_then_speaker_view() -> None:
    audio = RecordingFile(id="a", recording_type="audio_only")
    speaker = RecordingFile(id="b", recording_type="active_speaker")
    shared = RecordingFile(id="c", recording_type="shared_screen_with_speaker_view")

    assert select_primary_recording([audio, speaker, shared]).id == "c"
    assert select_primary_recording([audio, speaker]).id == "b"
    assert select_primary_recording([audio]).id == "a"
    assert select_primary_recording([]) is None


def test_recording_duration_from_file_timestamps() -> None:
    item = RecordingFile(
        recording_start="2026-03-02T09:00:00Z",
        recording_end="2026-03-02T09:42:30Z",
    )
    assert item.duration_seconds() == 2550
    assert RecordingFile().duration_seconds() is None
