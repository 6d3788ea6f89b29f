# coding=utf-8

from .accumulator import AccumulationState, CompletedSentence, MergeOutcome, SentenceAccumulator, splice_correction
from .messages import MessageError, decode_frame, parse_command, server_event
from .protocol import ProtocolOptions, SessionProtocolHandler
from .registry import Session, SessionConfig, SessionExistsError, SessionRegistry
from .sentence_policy import FragmentDecision, SentencePolicy, ends_sentence

__all__ = [
    "AccumulationState",
    "CompletedSentence",
    "FragmentDecision",
    "MergeOutcome",
    "MessageError",
    "ProtocolOptions",
    "SentenceAccumulator",
    "SentencePolicy",
    "Session",
    "SessionConfig",
    "SessionExistsError",
    "SessionProtocolHandler",
    "SessionRegistry",
    "decode_frame",
    "ends_sentence",
    "parse_command",
    "server_event",
    "splice_correction",
]
