# storage/__init__.py
from storia.storage.repository import Repository
from storia.storage.models import (
    BookStatus, SourceType,
    SceneDescriptors, SoundscapeTags,
    StoredBook, StoredPage, StoredScene, StoredSoundscape, ReadingProgress,
)

__all__ = [
    "Repository",
    "BookStatus", "SourceType",
    "SceneDescriptors", "SoundscapeTags",
    "StoredBook", "StoredPage", "StoredScene", "StoredSoundscape", "ReadingProgress",
]
