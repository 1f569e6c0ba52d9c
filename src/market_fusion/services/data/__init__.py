"""
Market data fusion services.

Pipeline stages for turning provider readings into fused records:
- Validation (quality scoring, dedupe, spike cleaning)
- Conflict resolution (weighted consensus)
- Technical indicators and sentiment enrichment
- Orchestration and scheduling
"""
