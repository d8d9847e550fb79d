from storia.soundscapes.assets import AssetStorage, LocalAssetStorage, SupabaseAssetStorage, asset_key
from storia.soundscapes.cache import CacheStats, SoundscapeCache, fingerprint
from storia.soundscapes.curation import SoundscapeCurator
from storia.soundscapes.generator import GenerationHandle, SoundscapeGenerator
from storia.soundscapes.models import AssetReference, GenerationOutcome, JobState, JobStatus
from storia.soundscapes.synthesis import AudioSynthesizer, ReplicateSynthesizer

__all__ = [
    "AssetStorage", "LocalAssetStorage", "SupabaseAssetStorage", "asset_key",
    "CacheStats", "SoundscapeCache", "fingerprint",
    "SoundscapeCurator",
    "GenerationHandle", "SoundscapeGenerator",
    "AssetReference", "GenerationOutcome", "JobState", "JobStatus",
    "AudioSynthesizer", "ReplicateSynthesizer",
]
