"""
Trading Agent Services

Service Categories:
- processing: Technical indicator calculation
- strategy: Signal generation, consensus and position sizing
- execution: Risk validation, execution guard, broker and order routing
- analysis: Outcome analytics and learning feedback
- agent_service: Decision-cycle orchestration and scheduling
"""
