"""
Timeline data layer.

Event model, aggregator and the orchestration that runs every parser.
"""
