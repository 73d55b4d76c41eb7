#!/usr/bin/env python3
"""
Amazon ECR access: describe repositories, describe images and batch delete.

Credentials come from boto3's default chain (environment variables, the
shared credentials file, web identity tokens and the instance role).
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

import boto3

from ecr_cleanup.error_utils import ECRError
from ecr_cleanup.logging_utils import get_logger
from ecr_cleanup.retention import BATCH_DELETE_MAX_IMAGES, ImageRecord

logger = get_logger(__name__)


class RegistryClient(Protocol):
    """Anything capable of listing and removing images from ECR repositories"""

    def list_repositories(self, repository_names: Sequence[str],
                          registry_id: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    def list_images(self, repository_name: str, registry_id: Optional[str] = None) -> List[ImageRecord]:
        ...

    def batch_remove_images(self, images: Sequence[ImageRecord]) -> None:
        ...


def get_ecr_client(region_name: str):
    return boto3.client("ecr", region_name=region_name)


class ECRClient:
    """Thin wrapper around the boto3 ECR client"""

    def __init__(self, region: str, client=None):
        self.region = region
        self.client = client if client is not None else get_ecr_client(region)

    def list_repositories(self, repository_names: Sequence[str],
                          registry_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the metadata of the given repositories.

        Raises:
            botocore.exceptions.ClientError: if any repository cannot be described
        """
        repos: List[Dict[str, Any]] = []
        if not repository_names:
            return repos

        params: Dict[str, Any] = {"repositoryNames": list(repository_names)}
        # Only set registryId when given so the caller's default registry is assumed
        if registry_id:
            params["registryId"] = registry_id

        paginator = self.client.get_paginator("describe_repositories")
        for page in paginator.paginate(**params):
            repos.extend(page.get("repositories", []))

        return repos

    def list_images(self, repository_name: str, registry_id: Optional[str] = None) -> List[ImageRecord]:
        """Return every image stored in the repository.

        Raises:
            botocore.exceptions.ClientError: if the images cannot be described
        """
        images: List[ImageRecord] = []
        if not repository_name:
            return images

        params: Dict[str, Any] = {"repositoryName": repository_name}
        if registry_id:
            params["registryId"] = registry_id

        paginator = self.client.get_paginator("describe_images")
        for page in paginator.paginate(**params):
            for detail in page.get("imageDetails", []):
                images.append(ImageRecord.from_ecr_detail(detail))

        return images

    def batch_remove_images(self, images: Sequence[ImageRecord]) -> None:
        """Delete all the given images in one call.

        All images must be stored in the same repository.

        Raises:
            ECRError: on more than BATCH_DELETE_MAX_IMAGES images, images from
                different repositories, or per-image failures reported by ECR
            botocore.exceptions.ClientError: if the call itself fails
        """
        # No images to be removed
        if not images:
            return

        if len(images) > BATCH_DELETE_MAX_IMAGES:
            raise ECRError(f"Only allows to remove {BATCH_DELETE_MAX_IMAGES} images in a single call")

        repository_name = images[0].repository_name
        if any(image.repository_name != repository_name for image in images):
            raise ECRError("All images must belong to the same ECR repo")

        params: Dict[str, Any] = {
            "repositoryName": repository_name,
            "imageIds": [{"imageDigest": image.digest} for image in images],
        }
        registry_id = images[0].registry_id
        if registry_id:
            params["registryId"] = registry_id

        response = self.client.batch_delete_image(**params)

        failures = response.get("failures") or []
        if failures:
            for failure in failures:
                digest = failure.get("imageId", {}).get("imageDigest")
                logger.debug(f"Failed to delete {repository_name}@{digest}: "
                             f"{failure.get('failureCode')} {failure.get('failureReason')}")
            raise ECRError(f"{len(failures)} of {len(images)} images could not be removed from '{repository_name}': "
                           f"{failures[0].get('failureCode')} {failures[0].get('failureReason')}")

        logger.debug(f"Removed {len(response.get('imageIds', []))} images from {repository_name}")
