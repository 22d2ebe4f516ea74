from __future__ import annotations

from typing import Optional, Sequence

from talentforge.app.errors import TransitionRejected
from talentforge.app.models import InterviewStatus, RecordingStatus, TranscriptStatus
from talentforge.app.payloads import RecordingFile

INTERVIEW_TRANSITIONS = {
    InterviewStatus.scheduled: {InterviewStatus.in_progress, InterviewStatus.cancelled},
    InterviewStatus.in_progress: {InterviewStatus.completed, InterviewStatus.cancelled},
    InterviewStatus.completed: set(),
    InterviewStatus.cancelled: set(),
}

RECORDING_PROGRESSION = (
    RecordingStatus.none,
    RecordingStatus.in_progress,
    RecordingStatus.processing,
    RecordingStatus.completed,
)

TRANSCRIPT_TRANSITIONS = {
    TranscriptStatus.none: {TranscriptStatus.pending, TranscriptStatus.processing},
    TranscriptStatus.pending: {TranscriptStatus.processing, TranscriptStatus.failed},
    TranscriptStatus.processing: {TranscriptStatus.completed, TranscriptStatus.failed},
    TranscriptStatus.failed: {TranscriptStatus.pending, TranscriptStatus.processing},
    TranscriptStatus.completed: set(),
}

PREFERRED_RECORDING_TYPES = ("shared_screen_with_speaker_view", "active_speaker")


def check_interview_transition(current: InterviewStatus, target: InterviewStatus) -> bool:
    """Return True when the move changes state, False for a same-state no-op."""
    if current == target:
        return False
    if target not in INTERVIEW_TRANSITIONS[current]:
        raise TransitionRejected(entity="interview", current=current.value, attempted=target.value)
    return True


def check_transcript_transition(current: TranscriptStatus, target: TranscriptStatus) -> bool:
    if current == target:
        return False
    if target not in TRANSCRIPT_TRANSITIONS[current]:
        raise TransitionRejected(
            entity="transcript", current=current.value, attempted=target.value
        )
    return True


def advance_recording(current: RecordingStatus, target: RecordingStatus) -> Optional[RecordingStatus]:
    """Return ``target`` when it is further along than ``current``, otherwise None."""
    if RECORDING_PROGRESSION.index(target) > RECORDING_PROGRESSION.index(current):
        return target
    return None


def select_primary_recording(files: Sequence[RecordingFile]) -> Optional[RecordingFile]:
    for recording_type in PREFERRED_RECORDING_TYPES:
        for item in files:
            if item.recording_type == recording_type:
                return item
    return files[0] if files else None
