"""
Trading Agent

Automated multi-strategy trading agent core: technical strategies are
blended into a weighted consensus, validated against risk limits, sized
conservatively, gated by cooldowns and daily limits, routed to a broker
and fed back into strategy weighting through outcome analytics.
"""

__version__ = "1.0.0"
__author__ = "Trading Agent Team"
