"""
Data Processing Services

Services:
- indicators: Technical indicator calculation
"""
