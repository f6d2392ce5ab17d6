"""
Biomatch Recognition Service

Identifies enrolled subjects from a photograph using:
- DeepFace for face detection and descriptors
- Weighted face / iris / ear distances over an in-memory snapshot index
- FastAPI for the RESTful API
"""

__version__ = "1.0.0"
