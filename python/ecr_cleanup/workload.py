#!/usr/bin/env python3
"""
Kubernetes workload inspection.

Lists pods in the watched namespaces and maps the ECR images their containers
reference to a ``{repository: {tag, ...}}`` usage index.
"""

import os
import re
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from kubernetes import client, config

from ecr_cleanup.logging_utils import get_logger
from ecr_cleanup.retention import LATEST_TAG

logger = get_logger(__name__)

# Only matches tagged images hosted on ECR, optionally pinned by digest
ECR_IMAGE_PATTERN = re.compile(
    r"^[^/]+\.dkr\.ecr\.[^./]+\.amazonaws\.com(?:\.cn)?/([^:@]+):([^:@/]+)(?:@.+)?$"
)


class WorkloadLister(Protocol):
    """Anything capable of listing pods from a set of namespaces"""

    def list_all_pods(self, namespaces: List[str]) -> List[client.V1Pod]:
        ...


class KubernetesClient:
    """Lists pods through the Kubernetes API"""

    def __init__(self, kubeconfig: Optional[str] = None, core_v1_client: Optional[client.CoreV1Api] = None):
        """Initialize the Kubernetes client

        Args:
            kubeconfig: Path to a kubeconfig file. When empty, in-cluster
                configuration is tried first, then the default local kubeconfig.
            core_v1_client: Preconfigured CoreV1Api, mostly for tests
        """
        if core_v1_client is not None:
            self.core_v1_client = core_v1_client
            return

        if kubeconfig:
            config.load_kube_config(config_file=os.path.expanduser(kubeconfig))
            logger.info(f"Kubernetes client initialized from {kubeconfig}")
        else:
            try:
                config.load_incluster_config()
                logger.info("Kubernetes client initialized with in-cluster config")
            except config.ConfigException as e:
                logger.debug(f"In-cluster config unavailable ({e}), falling back to local kubeconfig")
                config.load_kube_config()
                logger.info("Kubernetes client initialized from local kubeconfig")

        self.core_v1_client = client.CoreV1Api()

    def list_all_pods(self, namespaces: List[str]) -> List[client.V1Pod]:
        """Return all pods from the given namespaces.

        Raises:
            kubernetes.client.exceptions.ApiException: on the first namespace that cannot be listed
        """
        pods = []
        for namespace in namespaces:
            pod_list = self.core_v1_client.list_namespaced_pod(namespace=namespace)
            logger.debug(f"Found {len(pod_list.items)} pods in namespace {namespace}")
            pods.extend(pod_list.items)
        return pods


def parse_ecr_image(image: str) -> Optional[Tuple[str, str]]:
    """Split an ECR image reference into (repository, tag).

    Returns None for images not hosted on ECR or referenced without a tag.
    """
    if not image:
        return None
    match = ECR_IMAGE_PATTERN.match(image.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


def _container_images(pod) -> Iterable[str]:
    spec = getattr(pod, "spec", None)
    if spec is None:
        return []
    containers = list(spec.init_containers or []) + list(spec.containers or [])
    return [c.image for c in containers if c.image]


def ecr_images_from_pods(pods: Iterable) -> Dict[str, Set[str]]:
    """Map ECR repository names to the tags referenced by the given pods.

    Both init and regular containers count. The 'latest' tag is left out since
    the retention engine protects it unconditionally.
    """
    images_per_repo: Dict[str, Set[str]] = {}
    encountered: Set[str] = set()

    for pod in pods:
        for image in _container_images(pod):
            if image in encountered:
                continue
            encountered.add(image)

            parsed = parse_ecr_image(image)
            if parsed is None:
                continue

            repo_name, image_tag = parsed
            if image_tag == LATEST_TAG:
                continue

            images_per_repo.setdefault(repo_name, set()).add(image_tag)

    return images_per_repo


extract_usage = ecr_images_from_pods
