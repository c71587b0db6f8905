"""Post fan-out and delivery tracking.

Resolves post targeting (students plus nested groups) to recipient rows,
derives one delivery row per guardian, keeps both in sync when targeting
or guardian links change, and tracks pending / notified / read state.
"""
