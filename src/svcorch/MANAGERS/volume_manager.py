"""
Volume management for services: resolving and preparing host-side paths.
"""
import logging
import os
from typing import List

from ..MODELS.service_definition import ServiceSpec, VolumeMount

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Resolves volume sources to host paths and makes sure they exist before a
    service starts, so the container runtime does not create them as root.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".svcorch/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for named volumes.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))

    def prepare_volumes(self, spec: ServiceSpec) -> List[str]:
        """
        Prepares volumes for a service.

        Missing directory sources are created. A missing source whose target
        looks like a file is left alone with a warning, since creating a
        directory in its place would shadow the intended file.

        :param spec: The service whose volumes to prepare.
        :return: The resolved host path of each mount, in order.
        """
        sources = []
        for mount in spec.volumes:
            source_path = self.resolve_source(mount.source)
            sources.append(source_path)
            if os.path.exists(source_path):
                continue
            if self._looks_like_file(mount):
                logger.warning("[%s] Volume source %s does not exist", spec.name, source_path)
                continue
            logger.debug("[%s] Creating volume directory %s", spec.name, source_path)
            os.makedirs(source_path, exist_ok=True)
        return sources

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        source = os.path.expanduser(source)
        if not os.path.isabs(source) and not source.startswith('.'):
            return os.path.join(self.volumes_root, source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def _looks_like_file(self, mount: VolumeMount) -> bool:
        return bool(os.path.splitext(mount.target.rstrip('/'))[1])
