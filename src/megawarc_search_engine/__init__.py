"""Application-layer entrypoints for the megawarc tooling.

This package is the "app shell" around the megawarc library:
- CLI (`megawarc_search_engine.cli`)

The container/decode/parse/index logic lives in `megawarc_search_engine.megawarc`.
"""
