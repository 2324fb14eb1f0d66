"""Status projection and event broadcast to subscribers."""

from chatgate.status.hub import EventHub, Subscriber
from chatgate.status.projector import (
    ChallengeEncoder,
    StatusProjector,
    encode_challenge_data_url,
    project_status,
)

__all__ = [
    "ChallengeEncoder",
    "EventHub",
    "StatusProjector",
    "Subscriber",
    "encode_challenge_data_url",
    "project_status",
]
