"""HealthRelay: health-data acquisition, normalization and backend sync."""
