"""
Market data fusion pipeline.

Ingests price/volume readings from several crypto data providers, reconciles
them into one trusted record per asset per cycle, and enriches it with
technical indicators and fused sentiment.
"""

__version__ = "0.1.0"
