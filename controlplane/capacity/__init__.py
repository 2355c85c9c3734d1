"""Storage capacity: utilization monitoring and volume autoscale."""
