"""
Bundled engines

- navhint     : Periodic. popularity + co-occurrence hints, trained on demand
- online_sgd  : Continuous. SGDRegressor updated with every event

They exist to exercise the host end-to-end; their math is intentionally small.
"""
