"""
Core modules for Dance Timer.

This package contains the billing engine, the timer state machine and the
trigger gesture detector.
"""
