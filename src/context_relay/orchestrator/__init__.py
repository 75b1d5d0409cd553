"""Bounded-context task orchestration: planning, sessions, aggregation."""
