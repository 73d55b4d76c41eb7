#!/usr/bin/env python3
"""
Clean-up cycle and the background loop that runs it.

One cycle lists the pods in the watched namespaces, lists the watched ECR
repositories, and for each repository deletes the old images no running pod
uses. Failing to list pods or repositories abandons the cycle; a failure in a
single repository is recorded and the next repository is processed. Nothing is
retried: the next cycle is the retry.
"""

import threading
from typing import Callable, List, Optional

from ecr_cleanup.config_manager import CleanupTask
from ecr_cleanup.ecr_client import ECRClient, RegistryClient
from ecr_cleanup.error_utils import CleanupError, create_ecr_error, create_kubernetes_error
from ecr_cleanup.logging_utils import get_logger, log_exception
from ecr_cleanup.retention import select_images_for_deletion
from ecr_cleanup.workload import KubernetesClient, WorkloadLister, ecr_images_from_pods

logger = get_logger(__name__)


def remove_old_images(task: CleanupTask, kube_client: WorkloadLister,
                      ecr_client: RegistryClient) -> List[CleanupError]:
    """Delete ECR images that have been determined to be old and unused.

    Returns:
        Errors collected during the cycle, empty when everything went fine
    """
    errors: List[CleanupError] = []

    logger.info("Cleanup loop started.")

    try:
        pods = kube_client.list_all_pods(task.kube_namespaces)
    except Exception as e:
        errors.append(create_kubernetes_error("Cannot list pods", e))
        return errors
    logger.info(f"There are currently {len(pods)} running pods.")

    try:
        repos = ecr_client.list_repositories(task.ecr_repositories, task.registry_id)
    except Exception as e:
        errors.append(create_ecr_error("Cannot list ECR repositories", e))
        return errors

    used_images = ecr_images_from_pods(pods)
    logger.info(f"There are currently {sum(len(tags) for tags in used_images.values())} ECR images in use.")

    policy = task.retention_policy()

    for repo in repos:
        repo_name = repo["repositoryName"]
        logger.info(f"Processing '{repo_name}' ECR repo.")

        try:
            images = ecr_client.list_images(repo_name, task.registry_id)
        except Exception as e:
            errors.append(create_ecr_error("Cannot list images", e, repository=repo_name))
            continue
        logger.info(f"Number of images in ECR repo: {len(images)}")

        logger.debug(f"Max Images is {policy.max_images}")
        unused_old_images = select_images_for_deletion(policy, images, used_images.get(repo_name, set()))

        if not unused_old_images:
            logger.info("There's no old unused images to remove. Continuing.")
            continue

        for image in unused_old_images:
            logger.debug(f"Selected for removal: {image.describe()}")

        if task.dry_run:
            logger.info("Not deleting images due to dry-run being set")
            logger.info(f"Would have removed {len(unused_old_images)} images.")
            continue

        logger.info(f"Removing {len(unused_old_images)} old unused images.")
        try:
            ecr_client.batch_remove_images(unused_old_images)
        except Exception as e:
            errors.append(create_ecr_error("Could not batch remove images", e, repository=repo_name))
            continue

    logger.info("Cleanup loop finished.")

    return errors


def _default_kube_client_factory(task: CleanupTask) -> WorkloadLister:
    return KubernetesClient(task.kube_config)


def _default_ecr_client_factory(task: CleanupTask) -> RegistryClient:
    return ECRClient(task.aws_region)


class ImageCleanupLoop:
    """Runs the image clean-up repeatedly at an interval on a background thread"""

    def __init__(self, task: CleanupTask,
                 kube_client_factory: Callable[[CleanupTask], WorkloadLister] = _default_kube_client_factory,
                 ecr_client_factory: Callable[[CleanupTask], RegistryClient] = _default_ecr_client_factory):
        self.task = task
        self.kube_client_factory = kube_client_factory
        self.ecr_client_factory = ecr_client_factory
        self.kube_client: Optional[WorkloadLister] = None
        self.ecr_client: Optional[RegistryClient] = None
        self.startup_error: Optional[Exception] = None
        self.cycles_run = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval_seconds(self) -> float:
        return self.task.interval * 60

    def init_clients(self) -> None:
        """Create the ECR and Kubernetes clients, if not created already"""
        if self.ecr_client is None:
            self.ecr_client = self.ecr_client_factory(self.task)
        if self.kube_client is None:
            self.kube_client = self.kube_client_factory(self.task)

    def run_once(self) -> List[CleanupError]:
        """Run a single clean-up cycle and log its errors"""
        self.init_clients()
        errors = remove_old_images(self.task, self.kube_client, self.ecr_client)
        for error in errors:
            logger.error(str(error))
        self.cycles_run += 1
        return errors

    def _run(self) -> None:
        try:
            self.init_clients()
        except Exception as e:
            self.startup_error = e
            log_exception(logger, "Cannot create Kubernetes or ECR client", e)
            return

        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                # Retried on the next tick
                log_exception(logger, "Unexpected error during image cleanup cycle", e)

        logger.info("Stopped image cleanup loop.")

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Image cleanup loop already started")
        self._thread = threading.Thread(target=self._run, name="image-cleanup-loop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the loop to exit; a cycle in progress is allowed to finish"""
        self._stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker thread to exit. Returns True if it did."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
