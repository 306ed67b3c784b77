"""Autonomous self-improvement control loop.

The package watches a server's own operational health, diagnoses degradations,
applies bounded configuration changes, verifies them and learns which changes
work. Domain types live in `selfimprove.domain`, the loop phases in
`selfimprove.services`.
"""
