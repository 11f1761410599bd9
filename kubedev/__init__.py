"""kubedev - build, deploy and attach to a development environment in Kubernetes."""

__version__ = "0.1.0"
