"""
Deployment: compute platform backends, release management and verification.
"""

from .platform import ComputePlatform, EcsPlatform, KubernetesPlatform, create_platform
from .release import ReleaseManager, ReleaseResult, RevisionHistory
from .verifier import PostDeployVerifier

__all__ = [
    'ComputePlatform',
    'EcsPlatform',
    'KubernetesPlatform',
    'PostDeployVerifier',
    'ReleaseManager',
    'ReleaseResult',
    'RevisionHistory',
    'create_platform',
]
