"""
Strategy and Decision Services

Services:
- strategies: Technical strategy signal generators and registry
- consensus_engine: Weighted multi-strategy consensus and active strategy switching
- position_sizing: Confidence-scaled notional sizing
"""
