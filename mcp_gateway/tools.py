"""
Bundled tools: the hello-world, diagnostic and remediation tools from the
workshop labs.

Handlers never create cluster clients themselves. The Kubernetes API
objects arrive through context.backends ("core_v1", "apps_v1"), built once
at startup by load_kube_backends(), so tests pass fakes and a deployment
could pass clients for another cluster.

Capability tags used by the policy:
    demo:hello   hello_world
    k8s:read     list_pods, diagnose_pod, diagnose_deployment
    k8s:write    remediate_pod_restart
"""

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from mcp_gateway.config import Settings
from mcp_gateway.registry import ToolContext, ToolDescriptor, ToolRegistry

logger = logging.getLogger("mcp_gateway.tools")

# Container waiting reasons that mean the pod will not recover on its own.
FAILING_WAIT_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "CreateContainerConfigError",
        "InvalidImageName",
    }
)
RESTART_WARNING_THRESHOLD = 5
LOG_TAIL_LINES = 50

NAMESPACE_SCHEMA = {
    "type": "string",
    "pattern": "^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
    "maxLength": 63,
}
RESOURCE_NAME_SCHEMA = {
    "type": "string",
    "pattern": "^[a-z0-9]([-.a-z0-9]*[a-z0-9])?$",
    "maxLength": 253,
}


def load_kube_backends(settings: Settings) -> dict[str, Any]:
    """Build the Kubernetes API clients handed to tools through their context."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config(context=settings.kube_context)
        logger.info("Using kubeconfig (context=%s)", settings.kube_context or "current")
    return {"core_v1": client.CoreV1Api(), "apps_v1": client.AppsV1Api()}


def _backend(context: ToolContext, name: str) -> Any:
    try:
        return context.backends[name]
    except KeyError:
        raise RuntimeError(f"Kubernetes backend '{name}' is not configured") from None


# ---------------------------------------------------------------------------
# hello_world
# ---------------------------------------------------------------------------


def hello_world(arguments: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
    """Greet the caller. Used to check the gateway end to end."""
    name = arguments.get("name") or "world"
    return {"message": f"Hello, {name}!", "caller": context.claims.subject}


# ---------------------------------------------------------------------------
# list_pods
# ---------------------------------------------------------------------------


def list_pods(arguments: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
    """List pods in a namespace with their phase and restart counts."""
    core_v1 = _backend(context, "core_v1")
    namespace = arguments["namespace"]
    pods = core_v1.list_namespaced_pod(
        namespace, label_selector=arguments.get("label_selector") or None
    )
    items = []
    for pod in pods.items:
        statuses = pod.status.container_statuses or []
        items.append(
            {
                "name": pod.metadata.name,
                "phase": pod.status.phase,
                "ready": bool(statuses) and all(s.ready for s in statuses),
                "restarts": sum(s.restart_count or 0 for s in statuses),
            }
        )
    return {"namespace": namespace, "count": len(items), "pods": items}


# ---------------------------------------------------------------------------
# diagnose_pod
# ---------------------------------------------------------------------------


def _container_issues(pod: Any) -> list[dict[str, Any]]:
    issues = []
    for status in pod.status.container_statuses or []:
        state = status.state
        waiting = state.waiting if state else None
        if waiting is not None and waiting.reason in FAILING_WAIT_REASONS:
            issues.append(
                {
                    "container": status.name,
                    "issue": waiting.reason,
                    "detail": waiting.message or "",
                }
            )

        last = status.last_state.terminated if status.last_state else None
        if last is not None and last.reason == "OOMKilled":
            issues.append(
                {
                    "container": status.name,
                    "issue": "OOMKilled",
                    "detail": f"last exit code {last.exit_code}",
                }
            )

        if (status.restart_count or 0) >= RESTART_WARNING_THRESHOLD:
            issues.append(
                {
                    "container": status.name,
                    "issue": "FrequentRestarts",
                    "detail": f"{status.restart_count} restarts",
                }
            )
    return issues


def _warning_events(core_v1: Any, namespace: str, pod_name: str) -> list[dict[str, Any]]:
    events = core_v1.list_namespaced_event(
        namespace, field_selector=f"involvedObject.name={pod_name}"
    )
    return [
        {"reason": e.reason, "message": e.message, "count": e.count or 1}
        for e in events.items
        if e.type == "Warning"
    ]


def diagnose_pod(arguments: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
    """
    Inspect a pod for common failure modes.

    Reports crash loops, image pull failures, OOM kills and frequent
    restarts, plus the pod's Warning events. With include_logs, the tail of
    the first failing container's previous log is attached.
    """
    core_v1 = _backend(context, "core_v1")
    namespace = arguments["namespace"]
    pod_name = arguments["pod_name"]

    try:
        pod = core_v1.read_namespaced_pod(pod_name, namespace)
    except ApiException as e:
        if e.status == 404:
            return {"namespace": namespace, "pod": pod_name, "found": False}
        raise

    issues = _container_issues(pod)
    if pod.status.phase in ("Failed", "Unknown"):
        issues.append({"container": None, "issue": f"Pod{pod.status.phase}", "detail": pod.status.reason or ""})
    if pod.status.phase == "Pending":
        for condition in pod.status.conditions or []:
            if condition.type == "PodScheduled" and condition.status == "False":
                issues.append(
                    {"container": None, "issue": "Unschedulable", "detail": condition.message or ""}
                )

    result: dict[str, Any] = {
        "namespace": namespace,
        "pod": pod_name,
        "found": True,
        "phase": pod.status.phase,
        "healthy": not issues,
        "issues": issues,
        "events": _warning_events(core_v1, namespace, pod_name),
    }

    failing = [i["container"] for i in issues if i["container"]]
    if arguments.get("include_logs") and failing:
        try:
            result["logs"] = core_v1.read_namespaced_pod_log(
                pod_name,
                namespace,
                container=failing[0],
                previous=True,
                tail_lines=LOG_TAIL_LINES,
            )
        except ApiException as e:
            # No previous instance yet; not worth failing the diagnosis.
            result["logs"] = f"logs unavailable: {e.reason}"

    return result


# ---------------------------------------------------------------------------
# diagnose_deployment
# ---------------------------------------------------------------------------


def diagnose_deployment(arguments: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
    """Compare desired and available replicas and summarise unhealthy pods."""
    apps_v1 = _backend(context, "apps_v1")
    core_v1 = _backend(context, "core_v1")
    namespace = arguments["namespace"]
    name = arguments["deployment_name"]

    try:
        deployment = apps_v1.read_namespaced_deployment(name, namespace)
    except ApiException as e:
        if e.status == 404:
            return {"namespace": namespace, "deployment": name, "found": False}
        raise

    desired = deployment.spec.replicas or 0
    status = deployment.status
    available = status.available_replicas or 0
    conditions = [
        {"type": c.type, "status": c.status, "reason": c.reason, "message": c.message}
        for c in status.conditions or []
    ]

    selector = deployment.spec.selector.match_labels or {}
    label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
    pods = core_v1.list_namespaced_pod(namespace, label_selector=label_selector)

    unhealthy = []
    for pod in pods.items:
        issues = _container_issues(pod)
        if issues:
            unhealthy.append({"pod": pod.metadata.name, "issues": [i["issue"] for i in issues]})

    return {
        "namespace": namespace,
        "deployment": name,
        "found": True,
        "desired_replicas": desired,
        "ready_replicas": status.ready_replicas or 0,
        "available_replicas": available,
        "updated_replicas": status.updated_replicas or 0,
        "healthy": available >= desired and not unhealthy,
        "conditions": conditions,
        "unhealthy_pods": unhealthy,
    }


# ---------------------------------------------------------------------------
# remediate_pod_restart
# ---------------------------------------------------------------------------


def remediate_pod_restart(arguments: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
    """
    Restart a pod by deleting it so its controller recreates it.

    Bare pods (no owner reference) are left alone: deleting them would not
    bring them back.
    """
    core_v1 = _backend(context, "core_v1")
    namespace = arguments["namespace"]
    pod_name = arguments["pod_name"]
    dry_run = bool(arguments.get("dry_run", False))

    try:
        pod = core_v1.read_namespaced_pod(pod_name, namespace)
    except ApiException as e:
        if e.status == 404:
            return {"namespace": namespace, "pod": pod_name, "restarted": False, "reason": "pod not found"}
        raise

    owners = pod.metadata.owner_references or []
    if not owners:
        return {
            "namespace": namespace,
            "pod": pod_name,
            "restarted": False,
            "reason": "pod has no controller and would not be recreated",
        }

    if context.cancel_event.is_set():
        return {"namespace": namespace, "pod": pod_name, "restarted": False, "reason": "cancelled"}

    if not dry_run:
        core_v1.delete_namespaced_pod(pod_name, namespace)
    logger.info(
        "Pod restart requested",
        extra={
            "event_data": {
                "request_id": context.request_id,
                "subject": context.claims.subject,
                "namespace": namespace,
                "pod": pod_name,
                "dry_run": dry_run,
            }
        },
    )
    return {
        "namespace": namespace,
        "pod": pod_name,
        "restarted": not dry_run,
        "dry_run": dry_run,
        "owner": f"{owners[0].kind}/{owners[0].name}",
    }


BUILTIN_TOOLS = (
    ToolDescriptor(
        name="hello_world",
        description="Return a greeting and the authenticated caller.",
        required_capability="demo:hello",
        handler=hello_world,
        input_schema={
            "type": "object",
            "properties": {"name": {"type": "string", "maxLength": 64}},
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="list_pods",
        description="List pods in a namespace.",
        required_capability="k8s:read",
        handler=list_pods,
        input_schema={
            "type": "object",
            "properties": {
                "namespace": NAMESPACE_SCHEMA,
                "label_selector": {"type": "string", "maxLength": 256},
            },
            "required": ["namespace"],
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="diagnose_pod",
        description="Diagnose crash loops, image pull errors and OOM kills for a pod.",
        required_capability="k8s:read",
        handler=diagnose_pod,
        input_schema={
            "type": "object",
            "properties": {
                "namespace": NAMESPACE_SCHEMA,
                "pod_name": RESOURCE_NAME_SCHEMA,
                "include_logs": {"type": "boolean"},
            },
            "required": ["namespace", "pod_name"],
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="diagnose_deployment",
        description="Compare desired and available replicas of a deployment.",
        required_capability="k8s:read",
        handler=diagnose_deployment,
        input_schema={
            "type": "object",
            "properties": {
                "namespace": NAMESPACE_SCHEMA,
                "deployment_name": RESOURCE_NAME_SCHEMA,
            },
            "required": ["namespace", "deployment_name"],
            "additionalProperties": False,
        },
    ),
    ToolDescriptor(
        name="remediate_pod_restart",
        description="Restart a controller-managed pod by deleting it.",
        required_capability="k8s:write",
        handler=remediate_pod_restart,
        input_schema={
            "type": "object",
            "properties": {
                "namespace": NAMESPACE_SCHEMA,
                "pod_name": RESOURCE_NAME_SCHEMA,
                "dry_run": {"type": "boolean"},
            },
            "required": ["namespace", "pod_name"],
            "additionalProperties": False,
        },
    ),
)


def register_builtin_tools(registry: ToolRegistry) -> None:
    for descriptor in BUILTIN_TOOLS:
        registry.register(descriptor)
