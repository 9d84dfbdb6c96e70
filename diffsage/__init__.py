"""
diffsage - iterative diff analysis with multi-model consensus.

Entry points live in :mod:`diffsage.engine`.
"""

__version__ = "0.3.0"
