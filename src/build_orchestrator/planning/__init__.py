"""
Planning layer

Purpose
- Task graph document intake (schema validation, build construction) and the
  deterministic dependency graph utilities used for ordering and cycle reports.
"""
