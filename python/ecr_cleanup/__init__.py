"""Remove old, unused images from Amazon ECR repositories based on what a Kubernetes cluster runs."""

__version__ = "0.4.0"
