"""
Utility Modules for phrase-tts.

    - text.py: Phrase canonicalization helpers
    - timeit.py: Stage timing utilities
"""
