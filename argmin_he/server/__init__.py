"""
Argmin HE Artifact Server
"""
from .artifact_server import ArtifactServer, create_app, run_server

__all__ = ['ArtifactServer', 'create_app', 'run_server']
