"""
Live Tracking Module

Presence/mission reconciliation for the dispatch console plus the field
volunteer side (position capture, reporting, assignment status).

Usage:
    from services.tracking.reconciler import PresenceReconciler
    from services.tracking.runtime import ConsoleRuntime
    from services.tracking.status_controller import AssignmentStatusController
"""
