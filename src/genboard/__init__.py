"""
genboard: backend for running concurrent image-generation attempts.

Subpackages:
- core: documents, ports, application state
- storage: atomic JSON documents, content-addressed images, garbage collection
- providers: openai / gemini / vertex request building, streaming, image extraction
- tasks: sub-task registry and scheduler
- api: FastAPI surface and token checks
- cli: composition root and entrypoint
"""

__version__ = "0.1.0"
