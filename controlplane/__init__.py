"""Controller for one stateful service: single-writer volume binding, storage autoscale, blue/green release."""
