#!/usr/bin/env python3
"""
Retention decisions for ECR repositories.

Given the images stored in one repository, the tags currently referenced by
running pods and a retention policy, decide which images can be deleted.

An image is never deleted when it is tagged ``latest``, when any of its tags
is in use, or when any of its tags matches a keep filter. Images in use still
occupy a slot of the retention budget, so they push older unused images out.
At most ``BATCH_DELETE_MAX_IMAGES`` images are returned, oldest first, which
is the most ECR accepts in a single BatchDeleteImage call.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

LATEST_TAG = "latest"
BATCH_DELETE_MAX_IMAGES = 100


@dataclass(frozen=True)
class ImageRecord:
    """One image stored in an ECR repository"""

    repository_name: str
    digest: str
    pushed_at: datetime
    tags: Tuple[str, ...] = ()
    registry_id: Optional[str] = None
    size_in_bytes: Optional[int] = None

    @classmethod
    def from_ecr_detail(cls, detail: Dict[str, Any]) -> "ImageRecord":
        """Build a record from an entry of DescribeImages' ``imageDetails``"""
        return cls(
            repository_name=detail["repositoryName"],
            digest=detail["imageDigest"],
            pushed_at=detail["imagePushedAt"],
            tags=tuple(detail.get("imageTags") or ()),
            registry_id=detail.get("registryId"),
            size_in_bytes=detail.get("imageSizeInBytes"),
        )

    def describe(self) -> str:
        tags = ", ".join(self.tags) if self.tags else "<untagged>"
        return f"{self.repository_name}@{self.digest} [{tags}] pushed {self.pushed_at.isoformat()}"


@dataclass(frozen=True)
class RetentionPolicy:
    """How many images to keep per repository, and which tags are never deleted"""

    max_images: int
    keep_filters: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.max_images < 0:
            raise ValueError(f"max_images must be >= 0, got {self.max_images}")

    def compiled_keep_filters(self) -> List[Pattern]:
        return compile_keep_filters(self.keep_filters)


def compile_keep_filters(filters: Iterable[str]) -> List[Pattern]:
    """Compile keep filter patterns, raising re.error on an invalid one"""
    return [re.compile(f) for f in filters]


def sort_images_by_push_date(images: Iterable[ImageRecord]) -> List[ImageRecord]:
    """Return a new list of images, oldest push first"""
    return sorted(images, key=lambda image: image.pushed_at)


def apply_keep_filters(images: Sequence[ImageRecord], filters: Iterable) -> List[ImageRecord]:
    """Remove images with at least one tag matching at least one filter.

    Filters may be pattern strings or compiled patterns; matching uses
    ``search`` so a filter must be anchored to match the whole tag.
    """
    patterns = [f if isinstance(f, re.Pattern) else re.compile(f) for f in filters]
    if not patterns:
        return list(images)

    return [
        image for image in images
        if not any(pattern.search(tag) for tag in image.tags for pattern in patterns)
    ]


def filter_old_unused_images(max_images: int, repo_images: Sequence[ImageRecord],
                             tags_in_use: Iterable[str]) -> List[ImageRecord]:
    """Return the oldest unused images that exceed the retention budget.

    Args:
        max_images: Number of images to keep in the repository
        repo_images: Every image in the repository, in any order
        tags_in_use: Tags referenced by running pods (duplicates are fine)

    Returns:
        At most BATCH_DELETE_MAX_IMAGES images, sorted by push date
    """
    # There's no need to remove any images for now
    if max_images >= len(repo_images):
        return []

    used = set(tags_in_use)
    used_images_found = 0
    unused_images = []

    for image in repo_images:
        tags = set(image.tags)
        if LATEST_TAG in tags:
            continue
        if tags & used:
            used_images_found += 1
            continue
        unused_images.append(image)

    unused_images = sort_images_by_push_date(unused_images)

    delete_count = len(unused_images) - max_images + used_images_found
    delete_count = max(0, min(delete_count, len(unused_images), BATCH_DELETE_MAX_IMAGES))

    return unused_images[:delete_count]


def select_images_for_deletion(policy: RetentionPolicy, repo_images: Sequence[ImageRecord],
                               used_tags: Iterable[str]) -> List[ImageRecord]:
    """Apply the policy's keep filters, then pick the old unused images to delete"""
    candidates = apply_keep_filters(repo_images, policy.compiled_keep_filters())
    return filter_old_unused_images(policy.max_images, candidates, used_tags)
