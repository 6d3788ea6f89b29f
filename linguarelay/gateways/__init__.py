# coding=utf-8

from .errors import GatewayError
from .speech import MockSynthesizer, OpenAISpeechSynthesizer, SpeechResult
from .transcription import MockTranscriber, TranscriptionRequest, TranscriptionResult, WhisperTranscriber
from .translation import MockTranslator, OpenAIAPITranslator, TranslationResult

__all__ = [
    "GatewayError",
    "MockSynthesizer",
    "MockTranscriber",
    "MockTranslator",
    "OpenAIAPITranslator",
    "OpenAISpeechSynthesizer",
    "SpeechResult",
    "TranscriptionRequest",
    "TranscriptionResult",
    "TranslationResult",
    "WhisperTranscriber",
]
