"""Domain services for tags, visits, fraud scoring, anomaly scans and feedback."""
