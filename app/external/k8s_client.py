from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
import logging
from typing import List, Optional

from app.core.exceptions import ProvisioningError
from app.external.platform import InstanceRef, ProbeRoute

logger = logging.getLogger(__name__)

# Codes renvoyés quand le cluster ne peut pas allouer (quota, surcharge, indisponibilité)
RETRYABLE_STATUSES = {403, 409, 429, 500, 502, 503, 504}

APP_LABEL = "app"
SET_LABEL = "replica-set"
DETACHED = "__detached__"


class K8sClient:
    """
    Plateforme Kubernetes: un Deployment par replica set, un Service public et un
    Service de test par service déployé.
    """

    def __init__(self, namespace: str = "default", listener_port: int = 80, test_listener_port: int = 8080,
                 container_port: int = 8080):
        try:
            config.load_incluster_config()
        except ConfigException:
            try:
                config.load_kube_config()
            except Exception as e:
                logger.error(f"Impossible de charger la configuration Kubernetes: {e}")
                raise

        self.namespace = namespace
        self.listener_port = listener_port
        self.test_listener_port = test_listener_port
        self.container_port = container_port
        self.v1 = client.CoreV1Api()
        self.apps_v1 = client.AppsV1Api()

    # --- replica sets ---

    def create_replica_set(self, service_name: str, set_id: str, image_reference: str,
                           instance_count: int, port: int) -> None:
        """Crée le Deployment du replica set"""
        labels = {APP_LABEL: service_name, SET_LABEL: set_id}
        container = client.V1Container(
            name="app-container",
            image=image_reference,
            ports=[client.V1ContainerPort(container_port=port, protocol="TCP")],
            resources=client.V1ResourceRequirements(
                requests={"cpu": "256m", "memory": "512Mi"},
                limits={"cpu": "256m", "memory": "512Mi"}
            )
        )
        deployment = client.V1Deployment(
            metadata=client.V1ObjectMeta(name=set_id, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=instance_count,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container])
                )
            )
        )

        try:
            self.apps_v1.create_namespaced_deployment(self.namespace, deployment)
            logger.info(f"Deployment {set_id} créé ({instance_count} replicas, {image_reference})")
        except ApiException as e:
            if e.status == 409 and self._deployment_exists(set_id):
                logger.info(f"Deployment {set_id} déjà présent")
                return
            if e.status in RETRYABLE_STATUSES:
                raise ProvisioningError(f"Cluster refused deployment {set_id}: {e.status} {e.reason}") from e
            raise

    def retire_replica_set(self, service_name: str, set_id: str) -> None:
        """Supprime le Deployment (idempotent)"""
        try:
            self.apps_v1.delete_namespaced_deployment(
                set_id,
                self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground")
            )
            logger.info(f"Deployment {set_id} supprimé")
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Deployment {set_id} déjà supprimé")
                return
            raise

    def list_instances(self, set_id: str) -> List[InstanceRef]:
        """Pods du replica set"""
        pods = self.v1.list_namespaced_pod(self.namespace, label_selector=f"{SET_LABEL}={set_id}")
        instances = []
        for pod in pods.items:
            phase = (pod.status.phase or "Pending").lower()
            state = {"running": "running", "pending": "pending"}.get(phase, "terminated")
            if pod.metadata.deletion_timestamp is not None:
                state = "terminated"
            instances.append(InstanceRef(
                instance_id=pod.metadata.name,
                address=pod.status.pod_ip,
                state=state
            ))
        return instances

    # --- routage ---

    def route_entry_point(self, service_name: str, set_id: Optional[str]) -> None:
        """Un seul PATCH du sélecteur: les nouvelles connexions basculent d'un coup"""
        self._route(service_name, service_name, self.listener_port, set_id)

    def route_test_listener(self, service_name: str, set_id: Optional[str]) -> None:
        self._route(service_name, f"{service_name}-test", self.test_listener_port, set_id)

    def current_route(self, service_name: str) -> Optional[str]:
        try:
            service = self.v1.read_namespaced_service(service_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        selected = (service.spec.selector or {}).get(SET_LABEL)
        return None if selected in (None, DETACHED) else selected

    def probe_url(self, service_name: str, instance: InstanceRef, route: ProbeRoute) -> str:
        if route == ProbeRoute.TEST:
            return f"http://{instance.address}:{self.container_port}"
        return f"http://{service_name}.{self.namespace}.svc.cluster.local:{self.listener_port}"

    def _route(self, service_name: str, k8s_service: str, port: int, set_id: Optional[str]) -> None:
        selector = {APP_LABEL: service_name, SET_LABEL: set_id or DETACHED}
        try:
            self.v1.patch_namespaced_service(k8s_service, self.namespace, {"spec": {"selector": selector}})
            logger.info(f"Service {k8s_service} -> {set_id or 'détaché'}")
        except ApiException as e:
            if e.status != 404:
                raise
            # Premier déploiement: le Service n'existe pas encore
            self.v1.create_namespaced_service(self.namespace, client.V1Service(
                metadata=client.V1ObjectMeta(name=k8s_service, labels={APP_LABEL: service_name}),
                spec=client.V1ServiceSpec(
                    selector=selector,
                    ports=[client.V1ServicePort(
                        port=port,
                        target_port=self.container_port,
                        protocol="TCP"
                    )]
                )
            ))
            logger.info(f"Service {k8s_service} créé -> {set_id or 'détaché'}")

    def _deployment_exists(self, set_id: str) -> bool:
        try:
            self.apps_v1.read_namespaced_deployment(set_id, self.namespace)
            return True
        except ApiException:
            return False
