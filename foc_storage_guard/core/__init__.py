"""
Core modules for FOC Storage Guard.

This package contains pricing, solvency accounting, payment orchestration
and the upload pipeline.
"""
