import json
import uuid
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from nodegroup_sync.core.classifier_client import ClassifierClient, ClientOptions
from nodegroup_sync.core.model import ROOT_GROUP_ID

PREFIX = "/classifier-api/v1/"


def make_response(status: int, obj=None, headers=None, url: str = "") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = b"" if obj is None else json.dumps(obj).encode("utf-8")
    resp.encoding = "utf-8"
    resp.headers = CaseInsensitiveDict(headers or {"Content-Type": "application/json"})
    resp.url = url
    return resp


class StubSession:
    """Replays a list of statuses (or exceptions) and records every call."""

    def __init__(self, answers):
        self.headers = {}
        self.answers = list(answers)
        self.calls = []

    def request(self, method, url, data=None, timeout=None, verify=None, cert=None, allow_redirects=True):
        self.calls.append({"method": method, "url": url, "data": data, "verify": verify, "cert": cert,
                           "allow_redirects": allow_redirects})
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, requests.Response):
            return answer
        return make_response(answer, {"status": answer}, url=url)


def _pin(rule, nodes):
    leaves = [["=", "name", n] for n in nodes]
    if rule is None:
        return ["or", *leaves]
    if rule[0] == "or":
        out = list(rule)
        out.extend(leaf for leaf in leaves if leaf not in out)
        return out
    return ["or", rule, *leaves]


def _unpin(rule, nodes):
    if not rule or rule[0] != "or":
        return rule
    return [c for c in rule if not (isinstance(c, list) and c[:2] == ["=", "name"] and c[2] in nodes)]


def _merge(current, delta):
    out = dict(current or {})
    for k, v in delta.items():
        if v is None:
            out.pop(k, None)
        elif isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


class FakeClassifier:
    """In-memory node classifier behind the client's transport seam.

    Groups live in ``groups`` keyed by id; every request is appended to
    ``calls``; ``fail`` maps ``(METHOD, path)`` to a list of statuses served
    before the normal answer.
    """

    MUTATING = {"PUT", "POST", "DELETE"}

    def __init__(self, with_root: bool = True):
        self.headers = {}
        self.calls = []
        self.fail = {}
        self.groups = {}
        if with_root:
            self.groups[ROOT_GROUP_ID] = {
                "id": ROOT_GROUP_ID, "name": "All Nodes", "parent": ROOT_GROUP_ID,
                "environment": "production", "environment_trumps": False,
                "rule": ["and", ["~", "name", ".*"]], "classes": {}, "variables": {},
            }

    # helpers for assertions
    def mutations(self):
        return [c for c in self.calls if c[0] in self.MUTATING and not c[1].startswith("classified/")]

    def by_name(self, name):
        for g in self.groups.values():
            if g["name"] == name:
                return g
        return None

    def add(self, name, **attrs):
        gid = attrs.pop("id", None) or str(uuid.uuid4())
        group = {"id": gid, "name": name, "parent": ROOT_GROUP_ID, "environment": "production",
                 "environment_trumps": False, "classes": {}, "variables": {}}
        group.update(attrs)
        self.groups[gid] = group
        return gid

    def request(self, method, url, data=None, timeout=None, verify=None, cert=None, allow_redirects=True):
        parsed = urlparse(url)
        path = parsed.path.split(PREFIX, 1)[1]
        body = json.loads(data) if data else None
        self.calls.append((method, path, body))

        queued = self.fail.get((method, path))
        if queued:
            return make_response(queued.pop(0), {"kind": "injected"}, url=url)

        parts = path.split("/")
        if parts[0] == "groups":
            return self._groups(method, parts[1:], body, url)
        if parts[0] == "update-classes" and method == "POST":
            env = parse_qs(parsed.query).get("environment")
            return make_response(201, None, headers={"X-Environment": (env or ["*"])[0]}, url=url)
        if parts[0] == "classified" and method == "POST":
            return make_response(200, {"name": parts[2], "groups": [], "classes": {}, "request": body}, url=url)
        return make_response(404, {"kind": "not-found"}, url=url)

    def _groups(self, method, rest, body, url):
        if not rest:
            if method == "GET":
                return make_response(200, list(self.groups.values()), url=url)
            if method == "POST":
                gid = str(uuid.uuid4())
                self.groups[gid] = dict(body, id=gid)
                return make_response(303, None, headers={"Location": f"/classifier-api/v1/groups/{gid}"}, url=url)
            return make_response(405, None, url=url)

        gid = rest[0]
        if method == "PUT":
            self.groups[gid] = dict(body, id=gid)
            return make_response(201, self.groups[gid], url=url)
        if gid not in self.groups:
            return make_response(404, {"kind": "not-found"}, url=url)
        group = self.groups[gid]
        if method == "DELETE":
            del self.groups[gid]
            return make_response(204, None, url=url)
        if method == "POST" and len(rest) == 1:
            for k, v in body.items():
                if k in ("classes", "variables"):
                    group[k] = _merge(group.get(k), v or {})
                elif v is None:
                    group.pop(k, None)
                else:
                    group[k] = v
            return make_response(200, group, url=url)
        if method == "POST" and rest[1] == "pin":
            group["rule"] = _pin(group.get("rule"), body["nodes"])
            return make_response(204, None, url=url)
        if method == "POST" and rest[1] == "unpin":
            group["rule"] = _unpin(group.get("rule"), body["nodes"])
            return make_response(204, None, url=url)
        return make_response(405, None, url=url)


@pytest.fixture()
def fake():
    return FakeClassifier()


@pytest.fixture()
def client(fake):
    return ClassifierClient(
        "puppet.example", 4433, "/classifier-api",
        options=ClientOptions(max_attempts=3, retry_interval_sec=0),
        session=fake,
    )
