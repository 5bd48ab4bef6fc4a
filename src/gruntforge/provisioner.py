from __future__ import annotations

import json
from pathlib import Path
import shutil

from gruntforge.domain.errors import ConfigurationError
from gruntforge.domain.models import (
    CoordinationStoreDescriptor,
    Decomposition,
    ProvisionPlan,
    Task,
    VerifiedWorker,
    WorkerDescriptor,
)
from gruntforge.observability import get_logger
from gruntforge.workspace import RunWorkspace

_log = get_logger('gruntforge.provisioner')

COORDINATION_SERVICE = 'redis'
COORDINATION_IMAGE = 'redis:7-alpine'
COORDINATION_PORT = 6379
NETWORK_NAME = 'grunts-network'
WORKER_BUILD_CONTEXT = 'docker/worker'
# Dockerfile plus grunt_worker.py: generates into /workspace, serves it and /health on $PORT.
WORKER_IMAGE_DIR = Path(__file__).resolve().parent / 'worker_image'


def worker_ids_for(count: int) -> list[str]:
    return [f'worker{index + 1}' for index in range(max(0, int(count)))]


class WorkerProvisioner:
    """Turns verified workers into deployable descriptors and a compose file.

    No network calls happen here; the only side effects are files written
    under the run workspace. ``build_context`` replaces the bundled worker
    image; ``worker_command`` reaches each container as ``GENERATION_COMMAND``.
    """

    def __init__(
        self,
        *,
        worker_budget: int = 2,
        redis_url: str = 'redis://redis:6379',
        worker_command: str = '',
        build_context: Path | None = None,
    ):
        if int(worker_budget) < 1:
            raise ConfigurationError('worker budget must be at least 1', field='worker_budget')
        self.worker_budget = int(worker_budget)
        self.redis_url = str(redis_url or '').strip() or 'redis://redis:6379'
        self.worker_command = str(worker_command or '').strip()
        self.build_context = Path(build_context).resolve(strict=False) if build_context else None

    def select(self, verified: list[VerifiedWorker]) -> list[VerifiedWorker]:
        return list(verified[: self.worker_budget])

    def provision(
        self,
        *,
        task: Task,
        verified: list[VerifiedWorker],
        decomposition: Decomposition,
        workspace: RunWorkspace,
    ) -> ProvisionPlan:
        selected = self.select(verified)
        ports = decomposition.worker_ports
        worker_ids = worker_ids_for(len(selected))
        missing = [item for item in worker_ids if item not in ports]
        if missing:
            raise ConfigurationError(f'no port assigned for: {", ".join(missing)}', field='hosting_ports')
        if len(set(ports[item] for item in worker_ids)) != len(worker_ids):
            raise ConfigurationError('worker ports must be unique', field='hosting_ports')

        max_partials = max(1, int(task.max_execution_seconds) // max(1, int(task.partial_assessment_interval_seconds)))
        descriptors: list[WorkerDescriptor] = []
        for worker_id, item in zip(worker_ids, selected):
            path = self._worker_path(workspace, worker_id)
            port = int(ports[worker_id])
            descriptors.append(
                WorkerDescriptor(
                    worker_id=worker_id,
                    name=item.spec.name,
                    model=item.model,
                    specialization=item.specialization,
                    memory=item.spec.memory,
                    port=port,
                    workspace=path,
                    environment={
                        'MODEL': item.model,
                        'TASK_ID': 'task1',
                        'WORKER_ID': worker_id,
                        'SPECIALIZATION': item.specialization,
                        'TASK_PROMPT': decomposition.main_task,
                        'MAX_PARTIAL_ASSESSMENTS': str(max_partials),
                        'PARTIAL_ASSESSMENT_INTERVAL': str(int(task.partial_assessment_interval_seconds)),
                        'REDIS_URL': self.redis_url,
                        'PORT': str(port),
                        'WORKSPACE_PATH': '/workspace',
                        'GENERATION_COMMAND': self.worker_command,
                    },
                )
            )

        coordination = CoordinationStoreDescriptor(
            service_name=COORDINATION_SERVICE,
            image=COORDINATION_IMAGE,
            port=COORDINATION_PORT,
            url=self.redis_url,
        )
        context = self.build_context or self._write_build_context(workspace)
        compose = self.render_compose(descriptors, coordination, workspace=workspace, build_context=context)
        workspace.compose_file.write_text(json.dumps(compose, ensure_ascii=True, indent=2), encoding='utf-8')
        _log.info(
            'provisioned workers=%s compose=%s',
            ','.join(item.worker_id for item in descriptors),
            workspace.compose_file,
        )
        return ProvisionPlan(workers=tuple(descriptors), coordination=coordination, compose_file=workspace.compose_file)

    @staticmethod
    def render_compose(
        descriptors: list[WorkerDescriptor],
        coordination: CoordinationStoreDescriptor,
        *,
        workspace: RunWorkspace,
        build_context: Path | None = None,
    ) -> dict:
        root = workspace.root.resolve()
        context = Path(build_context).resolve() if build_context else root / WORKER_BUILD_CONTEXT
        try:
            context_ref = f'./{context.relative_to(root).as_posix()}'
        except ValueError:
            context_ref = context.as_posix()
        services: dict[str, dict] = {}
        for item in descriptors:
            relative = item.workspace.resolve().relative_to(root).as_posix()
            services[item.worker_id] = {
                'build': {'context': context_ref, 'dockerfile': 'Dockerfile'},
                'environment': dict(item.environment),
                'volumes': [f'./{relative}:/workspace'],
                'ports': [f'{item.port}:{item.port}'],
                'mem_limit': item.memory.lower(),
                'networks': [NETWORK_NAME],
                'depends_on': [coordination.service_name],
                'restart': 'no',
                'labels': {'gruntforge.worker': item.worker_id, 'gruntforge.model': item.model},
            }
        services[coordination.service_name] = {
            'image': coordination.image,
            'ports': [f'{coordination.port}:{coordination.port}'],
            'networks': [NETWORK_NAME],
        }
        return {
            'services': services,
            'networks': {NETWORK_NAME: {'driver': 'bridge'}},
        }

    @staticmethod
    def _worker_path(workspace: RunWorkspace, worker_id: str) -> Path:
        task_dir = workspace.task_dir.resolve()
        path = workspace.worker_dir(worker_id).resolve(strict=False)
        try:
            path.relative_to(task_dir)
        except ValueError as exc:
            raise ConfigurationError(f'worker path escapes the run workspace: {worker_id}', field='worker_id') from exc
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def _write_build_context(workspace: RunWorkspace) -> Path:
        context = workspace.root / WORKER_BUILD_CONTEXT
        context.mkdir(parents=True, exist_ok=True)
        for name in ('Dockerfile', 'grunt_worker.py'):
            shutil.copyfile(WORKER_IMAGE_DIR / name, context / name)
        return context
