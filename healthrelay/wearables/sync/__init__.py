"""Sync infrastructure for HealthRelay.

Modules:
    dispatcher  POST MetricRecords to the backend with bounded retry
    scheduler   Manual/periodic trigger coordination and the interval loop
"""
