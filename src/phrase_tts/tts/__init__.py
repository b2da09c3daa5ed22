"""
Cache and Engine Components.

This package provides everything below the request layer:
    - storage.py: CacheStore, the content-addressed artifact store
    - cache_manager.py: CacheManager, the background eviction thread
    - engine.py: SpeechSynthesizer base class and factory
    - engines/: Subprocess-backed synthesizers (Festival, Flite)
    - converter.py: Audio format converters (ffmpeg) and the converter chain
"""
