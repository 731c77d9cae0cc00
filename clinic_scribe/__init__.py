"""
Clinic Scribe - Session Capture and Transcription Microservice

A FastAPI-based service that records consultations as drafts, transcribes
them with speaker diarization under a monthly minute quota, drafts AI
suggestions and publishes the finalized medical document.
"""

__version__ = "1.0.0"
__author__ = "numediq"
