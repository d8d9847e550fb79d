from storia.playback.scheduler import AudioBackend, PlaybackScheduler, PlaybackState, PlayerStatus
from storia.playback.timeline import SceneCue, SceneTimeline, load_timeline

__all__ = [
    "AudioBackend", "PlaybackScheduler", "PlaybackState", "PlayerStatus",
    "SceneCue", "SceneTimeline", "load_timeline",
]
