"""
Timeline package: unified event model, aggregation and rendering.
"""
