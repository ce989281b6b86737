"""
Voice Recorder Services Package.

This package contains the per-participant capture session manager and its parts.
"""

from ear.services.voice_recorder.finalizer import OutputFinalizer
from ear.services.voice_recorder.manager import VoiceRecorderManagerService
from ear.services.voice_recorder.policy import RecordingPolicy
from ear.services.voice_recorder.registry import SessionRegistry
from ear.services.voice_recorder.session import RecordingSession, SessionState
from ear.services.voice_recorder.sink import SpeakingSink

__all__ = [
    "OutputFinalizer",
    "RecordingPolicy",
    "RecordingSession",
    "SessionRegistry",
    "SessionState",
    "SpeakingSink",
    "VoiceRecorderManagerService",
]
