"""Local persistence: durable observation queue, credentials and station cache."""

from adlsync.client.store.database import (
    CredentialStore,
    Database,
    InvalidTransitionError,
    ObservationStore,
    RecordNotFoundError,
    StationCache,
)
from adlsync.client.store.models import Credential, Observation, Station, observation_key
from adlsync.client.store.streams import ChangeHub

__all__ = [
    "ChangeHub",
    "Credential",
    "CredentialStore",
    "Database",
    "InvalidTransitionError",
    "Observation",
    "ObservationStore",
    "RecordNotFoundError",
    "Station",
    "StationCache",
    "observation_key",
]
