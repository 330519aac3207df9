"""Chat turn pipeline.

Executes one user turn:
  1. Rate limit, conversation lookup/creation, blocked check.
  2. Pre-flight danger keyword scan (a hit blocks and alerts; the model is skipped).
  3. Instruction stack: language, schema, safety, progress, mode overlay, context.
  4. Upstream call: blocking with validate/retry, or streamed through a
     StreamDeliveryBuffer that commits exactly once.
  5. Post-hoc safety escalation and topic confirmations.

See orchestrator.py for the step-by-step flow.
"""

from .orchestrator import (  # noqa: F401
    PreparedTurn,
    Services,
    TurnResult,
    build_services,
    complete_turn,
    generate_title,
    prepare_turn,
    run_turn,
    stream_turn,
)
