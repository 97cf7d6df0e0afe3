"""
TargetGraph - Evidence Fusion Pipeline

Turns a free-text biomedical question into typed entity anchors, fans out
across disease, target, pathway, interaction, drug and literature sources in
budgeted phases, and incrementally builds a single explorable evidence graph
with multi-anchor bridge analysis and target ranking.
"""

__version__ = "0.1.0"
__author__ = "TargetGraph Team"
