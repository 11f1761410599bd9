"""
Kubernetes Helpers

Pure functions over kubernetes client models used by pod discovery and
release resolution:
- Pod status derivation (same rules as the STATUS column of `kubectl get pods`)
- Release pod selection by revision annotation
- Label selector rendering
- Minikube detection (cached for the whole process)
"""

from kubernetes import client, config
from typing import Dict, List, Optional, Tuple
import logging
import threading

logger = logging.getLogger(__name__)

# Pod.Status.Reason set by the node controller when a node stops responding
NODE_UNREACHABLE_POD_REASON = "NodeLost"


# =============================================================================
# Pod Status
# =============================================================================

def _terminated_reason(terminated: client.V1ContainerStateTerminated, prefix: str = "") -> str:
    """Render a terminated state without reason as Signal:N or ExitCode:N."""
    if terminated.signal:
        return f"{prefix}Signal:{terminated.signal}"
    return f"{prefix}ExitCode:{terminated.exit_code or 0}"


def get_pod_status(pod: client.V1Pod) -> str:
    """
    Derive the display status of a pod.

    Starts from the phase (or status reason), lets the first unfinished init
    container override it with an "Init:" status, otherwise scans the regular
    containers from last to first. A pending deletion turns the result into
    "Terminating", or "Unknown" when the node is unreachable.

    Args:
        pod: Pod to inspect

    Returns:
        Status string such as "Running", "CrashLoopBackOff", "Init:0/2"
    """
    status = pod.status or client.V1PodStatus()
    reason = status.phase or ""
    if status.reason:
        reason = status.reason

    init_statuses = status.init_container_statuses or []
    init_count = len(pod.spec.init_containers or []) if pod.spec else 0
    initializing = False

    for i, container in enumerate(init_statuses):
        state = container.state or client.V1ContainerState()
        terminated = state.terminated
        waiting = state.waiting

        if terminated is not None and (terminated.exit_code or 0) == 0:
            continue

        if terminated is not None:
            # initialization failed
            if not terminated.reason:
                reason = _terminated_reason(terminated, prefix="Init:")
            else:
                reason = f"Init:{terminated.reason}"
        elif waiting is not None and waiting.reason and waiting.reason != "PodInitializing":
            reason = f"Init:{waiting.reason}"
        else:
            reason = f"Init:{i}/{init_count}"

        initializing = True
        break

    if not initializing:
        has_running = False

        for container in reversed(status.container_statuses or []):
            state = container.state or client.V1ContainerState()

            if state.waiting is not None and state.waiting.reason:
                reason = state.waiting.reason
            elif state.terminated is not None and state.terminated.reason:
                reason = state.terminated.reason
            elif state.terminated is not None:
                reason = _terminated_reason(state.terminated)
            elif container.ready and state.running is not None:
                has_running = True

        # A completed container next to one that is still running keeps the pod "Running"
        if reason == "Completed" and has_running:
            reason = "Running"

    deletion_timestamp = pod.metadata.deletion_timestamp if pod.metadata else None
    if deletion_timestamp is not None and status.reason == NODE_UNREACHABLE_POD_REASON:
        reason = "Unknown"
    elif deletion_timestamp is not None:
        reason = "Terminating"

    return reason


def is_primary_container_ready(pod: client.V1Pod) -> bool:
    """Check if the first container of a pod reports ready."""
    if not pod.status or not pod.status.container_statuses:
        return False
    return bool(pod.status.container_statuses[0].ready)


# =============================================================================
# Selectors
# =============================================================================

def label_selector_string(labels: Dict[str, str]) -> str:
    """Render a label dict as a selector string: {"app": "web"} -> "app=web"."""
    return ", ".join(f"{key}={value}" for key, value in labels.items())


# =============================================================================
# Release Pod Selection
# =============================================================================

def _parse_revision(value: Optional[str]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def select_release_pod(
    pods: List[client.V1Pod],
    annotation: str = "revision"
) -> Tuple[Optional[client.V1Pod], Optional[int]]:
    """
    Pick the pod of the newest release revision.

    The first pod is provisionally the highest. A later pod replaces it only
    when it carries a revision annotation that is strictly greater, so among
    pods of equal revision the first one listed wins.

    Args:
        pods: Pods of the release, in list order
        annotation: Annotation key holding the revision number

    Returns:
        (pod, revision): revision is None when the selected pod has no
        revision annotation; (None, None) when the list is empty
    """
    selected: Optional[client.V1Pod] = None
    highest_revision = 0

    for i, pod in enumerate(pods):
        annotations = (pod.metadata.annotations if pod.metadata else None) or {}
        pod_revision = annotations.get(annotation)
        has_higher_revision = i == 0

        if not has_higher_revision and pod_revision is not None:
            if _parse_revision(pod_revision) > highest_revision:
                has_higher_revision = True

        if has_higher_revision:
            selected = pod
            highest_revision = _parse_revision(pod_revision)

    if selected is None:
        return None, None

    annotations = (selected.metadata.annotations if selected.metadata else None) or {}
    if annotation not in annotations:
        return selected, None

    return selected, highest_revision


# =============================================================================
# Environment Detection
# =============================================================================

_minikube_lock = threading.Lock()
_is_minikube: Optional[bool] = None


def _detect_minikube() -> bool:
    try:
        _, active_context = config.list_kube_config_contexts()
    except Exception as e:
        logger.debug(f"[CLUSTER] Unable to read kubeconfig contexts: {e}")
        return False

    return bool(active_context) and active_context.get("name") == "minikube"


def is_minikube() -> bool:
    """
    Whether the current kubeconfig context is minikube.

    Computed on first use and cached for the lifetime of the process.
    """
    global _is_minikube

    if _is_minikube is None:
        with _minikube_lock:
            if _is_minikube is None:
                _is_minikube = _detect_minikube()
    return _is_minikube


def reset_minikube_cache() -> None:
    """Forget the cached minikube detection (for testing)."""
    global _is_minikube
    with _minikube_lock:
        _is_minikube = None
