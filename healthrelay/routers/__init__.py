"""HTTP routers for the HealthRelay API."""
