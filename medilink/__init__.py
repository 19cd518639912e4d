"""
Medilink

Triage-and-scheduling core for a patient-doctor appointment platform:
symptom classification, doctor matching, conflict-free slot booking and
notification fan-out to live and offline recipients.
"""

__version__ = "1.0.0"
