"""
Core Infrastructure Components

Shared building blocks for the agent.

Components:
- models: Value types for signals, portfolios, orders and trades
- errors: Exception taxonomy for "no action taken" outcomes
- event_bus: In-process observability sink
- database_schema / persistent_state_manager: SQLAlchemy trade store
"""
