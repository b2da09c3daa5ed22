"""
Speech Synthesizer Implementations.

Each synthesizer wraps an external command line program and is a subclass
of SpeechSynthesizer (see tts/engine.py):
    - festival_engine.py: Festival's text2wave
    - flite_engine.py: Flite (festival-lite)
"""
