"""Reconciliation engine: action registry, plans, run state and the reconciler.

Package name uses 'reconcile' so modules read as reconcile.graph,
reconcile.state and reconcile.executor.
"""
