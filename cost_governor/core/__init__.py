"""
Core modules for Cost Governor.

This package contains usage correlation, budget evaluation, the circuit
breaker, alert dispatching and licensing.
"""
