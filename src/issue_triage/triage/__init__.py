"""Triage jobs: prompt assembly, the job queue and the issue triager."""
