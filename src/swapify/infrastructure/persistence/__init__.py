"""Infrastructure persistence layer."""

from .credentials import DatabaseCredentialProvider
from .database import Database
from .models import (
    Base,
    PlaylistMemberModel,
    PlaylistModel,
    PlaylistTrackModel,
    TrackListenModel,
    TrackReactionModel,
    UserModel,
)
from .repositories import (
    ListenOutcome,
    ListenRepository,
    PlaybackStateStore,
    PlaylistRepository,
    ReactionRepository,
    SharedTrackRepository,
    UserRepository,
)
from .retry import is_lock_error, with_db_retry

__all__ = [
    # Database
    "Database",
    "Base",
    "DatabaseCredentialProvider",
    # Models
    "PlaylistMemberModel",
    "PlaylistModel",
    "PlaylistTrackModel",
    "TrackListenModel",
    "TrackReactionModel",
    "UserModel",
    # Repositories
    "ListenOutcome",
    "ListenRepository",
    "PlaybackStateStore",
    "PlaylistRepository",
    "ReactionRepository",
    "SharedTrackRepository",
    "UserRepository",
    # Retry
    "is_lock_error",
    "with_db_retry",
]
