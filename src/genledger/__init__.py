"""
genledger - Credit accounting & generation settlement engine

Bills exactly once per unit of generative work, credits each confirmed
payment exactly once, and drives long-running provider jobs to an end state.
"""

__version__ = "1.0.0"
