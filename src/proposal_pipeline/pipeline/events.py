"""Event names exchanged between the request side, the coordinator and collaborators."""

from __future__ import annotations

# Inbound
GENERATION_REQUESTED = "generation.requested"
GENERATION_CANCELLED = "generation.cancelled"
PREPARATION_COMPLETE = "preparation.complete"
UNIT_GENERATED = "unit.generated"
UNIT_DECISION = "unit.decision"
ASSEMBLY_COMPLETE = "assembly.complete"
SCORING_COMPLETE = "scoring.complete"

# Outbound
PREPARATION_START = "preparation.start"
UNIT_GENERATE = "unit.generate"
UNIT_CONSULT = "unit.consult"
ASSEMBLY_START = "assembly.start"
SCORING_START = "scoring.start"

# Function ids
COORDINATOR_FUNCTION = "proposal-coordinator"
PREPARATION_FUNCTION = "proposal-preparation"
UNIT_GENERATION_FUNCTION = "unit-generation"
UNIT_HANDOFF_FUNCTION = "unit-handoff"
UNIT_REVIEW_FUNCTION = "unit-review"
ASSEMBLY_FUNCTION = "proposal-assembly"
FINAL_SCORING_FUNCTION = "proposal-final-scoring"
STALL_MONITOR_SCHEDULE = "stall-monitor"
