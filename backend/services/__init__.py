"""
Service layer for business logic.

Subscription reconciliation lives here: webhook parsing and dispatch, the
subscription store, history logging, user-initiated lifecycle actions and
the scheduled downgrade sweeper.
"""
