"""
Legacy Migration Engine

Moves a legacy dispatch database (generic content-type references, a
state-change log, drifting column names) into a normalized target schema.

Supports:
- Schema probing with per-column fallbacks and documented defaults
- Resolution of generic (content type, object id) references
- Source and target contracts with field-level quarantine
- State-log folding into order state history
- Idempotent, batched upserts keyed by legacy-id backlinks
- Integrity auditing (orphans, duplicates, count parity) and run reports
"""

__version__ = "0.1.0"
