"""Document Ingestion and OCR Orchestration.

Turns captured documents (uploads, camera shots, scanner pages) into
validation-ready records: normalizes each capture, gates it against the
tenant's document quota, registers it, dispatches an extraction job and
tracks its completion, then runs batch-wide follow-on automation.
"""
