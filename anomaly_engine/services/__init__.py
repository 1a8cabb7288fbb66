# ==== SERVICES PACKAGE ==== #

"""
Services package for business logic and external integrations.

This package contains the invoice normalizer, the anomaly detectors, the
scan engine, and the collaborators it talks to: the invoice repository, the
AI narrative synthesizer and the audit log.
"""
