"""
Analysis Services

Services:
- feedback_loop: Outcome analytics and learning feedback
"""
