"""reliefgrid services.

- need_engine: per (event, sector, capability) need status evaluation
  with guardrails, transition legality and an append-only audit trail
"""
