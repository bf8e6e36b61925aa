"""Caller-side runtime around the rules core.

Settings, rule-book loading, the periodic tick task and the engine service
that feeds live state to the Evaluator.
"""
