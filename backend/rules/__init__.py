"""Core rule engine logic: models, indicators, parsing, risk, evaluation.

This package contains pure business logic with no I/O dependencies
(no database, exchange, or network access). Callers assemble an
EvalContext each tick and hand back whatever Intents the engine returns.
It is shared between the live tick loop (app/) and the backtesting
system (backtest/).
"""
