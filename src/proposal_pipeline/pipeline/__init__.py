"""Proposal pipeline: job store, coordinator, unit review and stall monitor.

Submodules are imported directly; this package keeps no re-exports so that
``proposal_pipeline.config`` can depend on ``pipeline.models`` without an
import cycle.
"""
