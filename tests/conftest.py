import threading

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

import cpburner


class FakeCoreV1Api:
    """In-memory stand-in for the Events and ConfigMaps part of CoreV1Api"""

    def __init__(self, fail_create=(), undeletable=(), list_errors=()):
        self.objects = {}
        self.fail_create = set(fail_create)
        self.undeletable = set(undeletable)
        # Raised in order by successive list calls, then lists succeed
        self.list_errors = list(list_errors)
        self.list_calls = []
        self.lock = threading.Lock()

    def seed(self, resource_type, count, prefix='seed'):
        ops = cpburner.ResourceOps(resource_type, 'default')
        for i in range(count):
            name = f"{prefix}-{i:05d}"
            self.objects[name] = ops.build(name, 'x')

    def _create(self, namespace, body, **kwargs):
        name = body.metadata.name
        with self.lock:
            if name in self.fail_create:
                raise ApiException(status=500, reason='Internal Server Error')
            if name in self.objects:
                raise ApiException(status=409, reason='AlreadyExists')
            self.objects[name] = body
        return body

    def _list(self, list_cls, namespace, limit=None, _continue=None, **kwargs):
        with self.lock:
            self.list_calls.append({'limit': limit, '_continue': _continue})
            if self.list_errors:
                raise self.list_errors.pop(0)
            # Tokens resume after the last key returned, like the API server's
            names = sorted(n for n in self.objects if not _continue or n > _continue)
            page = names[:limit] if limit else names
            token = page[-1] if len(names) > len(page) else None
            items = [self.objects[name] for name in page]
        return list_cls(items=items, metadata=client.V1ListMeta(_continue=token))

    def _delete(self, namespace, name, **kwargs):
        with self.lock:
            if name in self.undeletable:
                raise ApiException(status=403, reason='Forbidden')
            if name not in self.objects:
                raise ApiException(status=404, reason='NotFound')
            del self.objects[name]

    def create_namespaced_config_map(self, namespace, body, **kwargs):
        return self._create(namespace, body, **kwargs)

    def create_namespaced_event(self, namespace, body, **kwargs):
        return self._create(namespace, body, **kwargs)

    def list_namespaced_config_map(self, namespace, **kwargs):
        return self._list(client.V1ConfigMapList, namespace, **kwargs)

    def list_namespaced_event(self, namespace, **kwargs):
        return self._list(client.CoreV1EventList, namespace, **kwargs)

    def delete_namespaced_config_map(self, name, namespace, **kwargs):
        return self._delete(namespace, name, **kwargs)

    def delete_namespaced_event(self, name, namespace, **kwargs):
        return self._delete(namespace, name, **kwargs)


@pytest.fixture(autouse=True)
def reset_shutdown():
    cpburner.shutdown_event.clear()
    yield
    cpburner.shutdown_event.clear()


@pytest.fixture
def fake_api():
    return FakeCoreV1Api()


@pytest.fixture
def stats():
    return cpburner.Stats()


def make_config(action, **overrides):
    values = {
        'resource_type': cpburner.RESOURCE_CONFIGMAP,
        'concurrency': 4,
        'list_limit': 10,
        'resource_count': 40,
        'message_size': 32,
        'prefix': 'test',
    }
    values.update(overrides)
    return cpburner.Config(action=action, **values)
