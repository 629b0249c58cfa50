"""
Execution and Risk Management Services

Services:
- risk_manager: Pre-trade risk validation
- execution_guard: Cooldown, daily limit and kill switch
- broker: Broker adapter interface and simulated paper broker
- order_gateway: Idempotent order routing and trade recording
"""
