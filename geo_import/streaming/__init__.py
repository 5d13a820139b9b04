"""Streaming processor framework.

Format-agnostic chunking, memory-budget enforcement, progress events,
running bounds and the injected memory monitor.  Parsers plug into
``StreamingProcessor`` as chunk producers.

Sub-modules are imported directly (``geo_import.streaming.memory`` etc.);
this package does not re-export them because the models package depends
on ``geo_import.streaming.bounds``.
"""
