"""
Compute Platform

The platform that runs service instances, behind one interface: describe
the service, register a revision for an artifact, and issue rolling
updates. Every describe is a fresh snapshot; the platform is assumed to be
eventually consistent.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import boto3
from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException

from ..config import DeploymentConfig
from ..errors import PlatformError, TransientError
from ..models import PlatformDeployment, ServiceSnapshot
from ..utils.aws import call_aws

logger = logging.getLogger(__name__)

# Fields describe_task_definition returns that register_task_definition rejects
TASK_DEFINITION_READ_ONLY_FIELDS = (
    'taskDefinitionArn',
    'revision',
    'status',
    'requiresAttributes',
    'placementConstraints',
    'compatibilities',
    'registeredAt',
    'registeredBy',
    'deregisteredAt',
)


class ComputePlatform(ABC):
    """Compute platform collaborator"""

    @abstractmethod
    async def describe_service(self) -> ServiceSnapshot:
        """Running/desired counts and deployments of the service"""

    @abstractmethod
    async def update_service(
        self,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        max_percent: Optional[int] = None,
        min_healthy_percent: Optional[int] = None
    ) -> None:
        """Start a rolling update to `revision` and/or `desired_count`"""

    @abstractmethod
    async def register_revision(self, artifact: str) -> str:
        """Register a revision running `artifact`; returns its id"""

    @abstractmethod
    async def resolve_artifact(self, tag: str) -> str:
        """Full artifact reference for an image tag"""

    @abstractmethod
    async def artifact_exists(self, artifact: str) -> bool:
        """Whether the artifact can be pulled"""

    @abstractmethod
    async def list_revisions(self, limit: int = 10) -> List[str]:
        """Recently registered revisions, newest first"""

    async def resolve_revision(self, revision: str) -> str:
        """Canonical id of a revision given by the operator"""
        return revision


def _timestamp(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class EcsPlatform(ComputePlatform):
    """ECS service backed by task definitions and ECR images"""

    def __init__(self, config: DeploymentConfig, session: Optional[boto3.session.Session] = None):
        session = session or boto3.session.Session()
        self.config = config
        self.cluster = config.cluster_name
        self.service = config.service_name
        self.region = config.region
        self.ecs = session.client('ecs', region_name=self.region)
        self.ecr = session.client('ecr', region_name=self.region)
        self.sts = session.client('sts', region_name=self.region)

    async def _describe_raw(self) -> Dict:
        response = await call_aws(
            self.ecs.describe_services,
            cluster=self.cluster,
            services=[self.service]
        )
        services = response.get('services', [])
        if not services or services[0].get('status') == 'INACTIVE':
            raise PlatformError(
                f"Service {self.service} not found in cluster {self.cluster}"
            )
        return services[0]

    async def describe_service(self) -> ServiceSnapshot:
        service = await self._describe_raw()
        deployments = [
            PlatformDeployment(
                deployment_id=d.get('id', ''),
                status=d.get('status', ''),
                revision=d.get('taskDefinition', ''),
                running_count=d.get('runningCount', 0),
                desired_count=d.get('desiredCount', 0),
                rollout_state=d.get('rolloutState'),
                created_at=_timestamp(d.get('createdAt')),
            )
            for d in service.get('deployments', [])
        ]
        return ServiceSnapshot(
            service_name=service.get('serviceName', self.service),
            revision=service.get('taskDefinition', ''),
            running_count=service.get('runningCount', 0),
            desired_count=service.get('desiredCount', 0),
            deployments=deployments,
            status=service.get('status', 'ACTIVE'),
        )

    async def update_service(
        self,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        max_percent: Optional[int] = None,
        min_healthy_percent: Optional[int] = None
    ) -> None:
        params = {'cluster': self.cluster, 'service': self.service}
        if revision:
            params['taskDefinition'] = revision
            params['forceNewDeployment'] = True
        if desired_count is not None:
            params['desiredCount'] = desired_count
        if max_percent is not None or min_healthy_percent is not None:
            params['deploymentConfiguration'] = {
                'maximumPercent': max_percent if max_percent is not None else self.config.max_percent,
                'minimumHealthyPercent': (
                    min_healthy_percent if min_healthy_percent is not None
                    else self.config.min_healthy_percent
                ),
            }

        await call_aws(self.ecs.update_service, **params)
        logger.info(
            f"Service update initiated: {self.service} "
            f"revision={revision or 'unchanged'} desired={desired_count if desired_count is not None else 'unchanged'}"
        )

    async def register_revision(self, artifact: str) -> str:
        """Clone the current task definition with a new image"""
        service = await self._describe_raw()
        current = await call_aws(
            self.ecs.describe_task_definition,
            taskDefinition=service['taskDefinition']
        )
        task_def = dict(current['taskDefinition'])
        for key in TASK_DEFINITION_READ_ONLY_FIELDS:
            task_def.pop(key, None)

        containers = [dict(c) for c in task_def.get('containerDefinitions', [])]
        if not containers:
            raise PlatformError(f"Task definition {service['taskDefinition']} has no containers")

        target = containers[0]
        if self.config.container_name:
            named = [c for c in containers if c.get('name') == self.config.container_name]
            if not named:
                raise PlatformError(f"Container {self.config.container_name} not in task definition")
            target = named[0]

        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')
        target['image'] = artifact
        target['environment'] = [
            e for e in target.get('environment', []) if e.get('name') != 'DEPLOYMENT_TIMESTAMP'
        ] + [{'name': 'DEPLOYMENT_TIMESTAMP', 'value': timestamp}]
        task_def['containerDefinitions'] = containers

        response = await call_aws(self.ecs.register_task_definition, **task_def)
        arn = response['taskDefinition']['taskDefinitionArn']
        logger.info(f"New task definition created: {arn}")
        return arn

    async def resolve_artifact(self, tag: str) -> str:
        if self.config.ecr_repository:
            return f"{self.config.ecr_repository}:{tag}"
        identity = await call_aws(self.sts.get_caller_identity)
        return (
            f"{identity['Account']}.dkr.ecr.{self.region}.amazonaws.com/"
            f"{self.service}:{tag}"
        )

    async def artifact_exists(self, artifact: str) -> bool:
        repository, _, tag = artifact.rpartition(':')
        if not repository or '/' in tag:
            repository, tag = artifact, 'latest'
        repository_name = repository.split('/', 1)[1] if '/' in repository else repository

        try:
            await call_aws(
                self.ecr.describe_images,
                repositoryName=repository_name,
                imageIds=[{'imageTag': tag}]
            )
        except PlatformError as e:
            if e.details.get('code') in ('ImageNotFoundException', 'RepositoryNotFoundException'):
                return False
            raise PlatformError(f"Could not validate image {artifact}: {e.message}", code=e.details.get('code'))
        return True

    async def list_revisions(self, limit: int = 10) -> List[str]:
        service = await self._describe_raw()
        # arn:aws:ecs:<region>:<account>:task-definition/<family>:<revision>
        family = service['taskDefinition'].split('/')[-1].split(':')[0]
        response = await call_aws(
            self.ecs.list_task_definitions,
            familyPrefix=family,
            status='ACTIVE',
            sort='DESC',
            maxResults=limit
        )
        return response.get('taskDefinitionArns', [])

    async def resolve_revision(self, revision: str) -> str:
        if revision.startswith('arn:'):
            return revision
        response = await call_aws(self.ecs.describe_task_definition, taskDefinition=revision)
        return response['taskDefinition']['taskDefinitionArn']


class KubernetesPlatform(ComputePlatform):
    """Kubernetes Deployment; the container image is the revision"""

    REVISION_ANNOTATION = 'deployment.kubernetes.io/revision'

    def __init__(self, config: DeploymentConfig, apps_v1: Optional[k8s_client.AppsV1Api] = None):
        self.config = config
        self.name = config.service_name
        self.namespace = config.namespace

        if apps_v1 is None:
            try:
                k8s_config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
                logger.info("Loaded Kubernetes config from kubeconfig")
            apps_v1 = k8s_client.AppsV1Api()
        self.apps_v1 = apps_v1

    async def _call(self, method, **kwargs):
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ApiException as e:
            if e.status == 429 or (e.status or 0) >= 500:
                raise TransientError(f"Kubernetes API {e.status}: {e.reason}")
            raise PlatformError(f"Kubernetes API {e.status}: {e.reason}")

    async def _read(self):
        return await self._call(
            self.apps_v1.read_namespaced_deployment,
            name=self.name,
            namespace=self.namespace
        )

    def _container(self, deployment):
        containers = deployment.spec.template.spec.containers
        if self.config.container_name:
            for container in containers:
                if container.name == self.config.container_name:
                    return container
            raise PlatformError(f"Container {self.config.container_name} not in deployment {self.name}")
        return containers[0]

    async def describe_service(self) -> ServiceSnapshot:
        deployment = await self._read()
        image = self._container(deployment).image
        status = deployment.status
        desired = deployment.spec.replicas or 0
        total = status.replicas or 0
        updated = status.updated_replicas or 0
        available = status.available_replicas or 0
        observed = (status.observed_generation or 0) >= (deployment.metadata.generation or 0)

        # Conditions describe the observed generation, not a freshly patched one
        rollout_state = None
        for condition in status.conditions or []:
            if observed and condition.type == 'Progressing' and condition.reason == 'ProgressDeadlineExceeded':
                rollout_state = 'FAILED'

        deployments = [PlatformDeployment(
            deployment_id=f"{self.name}-{deployment.metadata.generation}",
            status='PRIMARY',
            revision=image,
            running_count=min(updated, available),
            desired_count=desired,
            rollout_state=rollout_state,
        )]
        if not observed or total > updated:
            deployments.append(PlatformDeployment(
                deployment_id=f"{self.name}-previous",
                status='ACTIVE',
                revision='previous',
                running_count=max(total - updated, 0),
                desired_count=0,
            ))

        return ServiceSnapshot(
            service_name=self.name,
            revision=image,
            running_count=available,
            desired_count=desired,
            deployments=deployments,
        )

    async def update_service(
        self,
        revision: Optional[str] = None,
        desired_count: Optional[int] = None,
        max_percent: Optional[int] = None,
        min_healthy_percent: Optional[int] = None
    ) -> None:
        spec: Dict = {}
        if revision:
            container = self._container(await self._read())
            spec['template'] = {'spec': {'containers': [{'name': container.name, 'image': revision}]}}
        if desired_count is not None:
            spec['replicas'] = desired_count
        if max_percent is not None or min_healthy_percent is not None:
            max_percent = max_percent if max_percent is not None else self.config.max_percent
            min_healthy = (
                min_healthy_percent if min_healthy_percent is not None
                else self.config.min_healthy_percent
            )
            spec['strategy'] = {
                'type': 'RollingUpdate',
                'rollingUpdate': {
                    'maxSurge': f"{max_percent - 100}%",
                    'maxUnavailable': f"{100 - min_healthy}%",
                },
            }

        await self._call(
            self.apps_v1.patch_namespaced_deployment,
            name=self.name,
            namespace=self.namespace,
            body={'spec': spec}
        )
        logger.info(f"Patched deployment {self.namespace}/{self.name}")

    async def register_revision(self, artifact: str) -> str:
        return artifact

    async def resolve_artifact(self, tag: str) -> str:
        repository = self.config.ecr_repository or self.name
        return f"{repository}:{tag}"

    async def artifact_exists(self, artifact: str) -> bool:
        # Image pulls are validated by the kubelet during the rollout
        return True

    async def list_revisions(self, limit: int = 10) -> List[str]:
        deployment = await self._read()
        labels = deployment.spec.selector.match_labels or {}
        selector = ','.join(f"{k}={v}" for k, v in labels.items())
        replica_sets = await self._call(
            self.apps_v1.list_namespaced_replica_set,
            namespace=self.namespace,
            label_selector=selector
        )

        def revision_number(rs) -> int:
            annotations = rs.metadata.annotations or {}
            try:
                return int(annotations.get(self.REVISION_ANNOTATION, 0))
            except ValueError:
                return 0

        ordered = sorted(replica_sets.items, key=revision_number, reverse=True)
        images = []
        for rs in ordered:
            image = rs.spec.template.spec.containers[0].image
            if image not in images:
                images.append(image)
        return images[:limit]


def create_platform(config: DeploymentConfig) -> ComputePlatform:
    """Build the configured compute platform backend"""
    if config.platform == 'kubernetes':
        return KubernetesPlatform(config)
    return EcsPlatform(config)
