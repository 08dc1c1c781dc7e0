"""
classroom_sim
Scenario lifecycle and simulation job pipeline for classroom exercises.
"""
__version__ = "1.0.0"
