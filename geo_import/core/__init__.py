"""Core utilities and shared infrastructure.

- config: Configuration loading and validation
- constants: SRIDs, default rectangles, the static format registry
- exceptions: Error taxonomy shared by every stage
"""
