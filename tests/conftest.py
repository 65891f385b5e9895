import os
import sys
from datetime import datetime, timezone, timedelta

import pytest
import yaml

os.environ["AWS_XRAY_SDK_ENABLED"]  = "false"
os.environ["AWS_ACCESS_KEY_ID"]     = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"]    = "testing"
os.environ["AWS_SESSION_TOKEN"]     = "testing"
os.environ["AWS_DEFAULT_REGION"]    = "us-east-1"
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from moto import mock_aws

import app
import notify
import topology
import config as Cfg

# Aligned on a 5 minute boundary
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)

ZONES     = ["zone-a", "zone-b", "zone-c"]
ENDPOINTS = ["10.0.%d.%d:80,az=%s" % (i % 3, i + 1, ZONES[i % 3]) for i in range(9)]


class FakeProber:
    """ Health probe answering healthy unless the target address is listed in 'failing'.
    """
    def __init__(self):
        self.failing = set()
        self.calls   = []

    def __call__(self, address, port, path, timeout):
        self.calls.append((address, port, path))
        return address not in self.failing


class FakeForwarder:
    """ Target stand-in: answers 200 by default, or the status code / exception registered for a target id.
    """
    def __init__(self):
        self.calls     = []
        self.behaviors = {}

    def __call__(self, target, method, url, headers, body, timeout):
        self.calls.append(target["Id"])
        behavior = self.behaviors.get(target["Id"], 200)
        if isinstance(behavior, Exception):
            raise behavior
        return behavior, {"Content-Type": "text/plain"}, bytes("Hello from %s" % target["Id"], "utf-8")


class Harness:
    """ Drive control passes with a simulated clock.
    """
    def __init__(self, context, prober, forwarder):
        self.context   = context
        self.prober    = prober
        self.forwarder = forwarder

    @property
    def now(self):
        return self.context["now"]

    @property
    def ec2(self):
        return self.context["o_ec2"]

    @property
    def targetgroup(self):
        return self.context["o_targetgroup"]

    @property
    def cloudwatch(self):
        return self.context["o_cloudwatch"]

    def run_pass(self, cpu=None):
        if cpu is not None:
            self.cloudwatch.put_metric("CPUUtilization", cpu, date=self.now)
        app.main_handler(self.context, now=self.now)

    def advance(self, seconds, step=30, cpu=None, on_pass=None):
        """ Move the clock by 'seconds', running a control pass every 'step' seconds.
        """
        elapsed = 0
        while elapsed < seconds:
            self.context["now"] = self.now + timedelta(seconds=step)
            elapsed += step
            self.run_pass(cpu=cpu)
            if on_pass is not None:
                on_pass(self)

    def active_ids(self):
        return self.ec2.get_instance_ids(self.ec2.get_active_instances())

    def healthy_ids(self):
        return self.targetgroup.get_registered_instance_ids(state="healthy")

    def address_of(self, instance_id):
        return self.ec2.get_instance_by_id(instance_id)["PrivateIpAddress"]


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield


@pytest.fixture
def ctx():
    """ Bare context with an initialized configuration registry.
    """
    notify.notify_mgr = None
    context = {"now": T0, "GroupName": "test-fleet", "AWS_DEFAULT_REGION": "us-east-1"}
    Cfg.init(context, with_predefined_configuration=False)
    topology.register_config()
    context["settings"] = topology.FleetSettings.from_config()
    yield context
    notify.notify_mgr = None


@pytest.fixture
def config_url(tmp_path):
    def _write(**overrides):
        c = {
            "ec2.provisioner": "static",
            "fleet.static.endpoints": ";".join(ENDPOINTS),
        }
        c.update(overrides)
        path = tmp_path / "webfleet.yaml"
        path.write_text(yaml.safe_dump(c))
        return "file://%s" % path
    return _write


@pytest.fixture
def harness(config_url):
    """ Factory of fully initialized control planes over the static endpoint pool.

    Configuration keys are passed as keyword arguments with '.' replaced by '__'.
    """
    def _make(**overrides):
        notify.notify_mgr = None
        keys    = {k.replace("__", "."): v for k, v in overrides.items()}
        context = {
            "now"                 : T0,
            "GroupName"           : "test-fleet",
            "AWS_DEFAULT_REGION"  : "us-east-1",
            "WEBFLEET_CONFIG_URLS": config_url(**keys)
        }
        prober    = FakeProber()
        forwarder = FakeForwarder()
        app.init(context, with_predefined_configuration=False, prober=prober, forwarder=forwarder,
                clock=lambda: context["now"])
        return Harness(context, prober, forwarder)
    yield _make
    notify.notify_mgr = None


@pytest.fixture
def converged(harness):
    """ A fleet of 3 healthy instances (initial launch, registration, 2 successful probes).
    """
    h = harness()
    h.run_pass()
    h.advance(60)
    assert len(h.healthy_ids()) == 3
    return h
