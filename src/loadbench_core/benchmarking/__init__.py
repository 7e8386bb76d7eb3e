"""Load generation, metric aggregation, and threshold evaluation."""
