import boto3
import pytest

import ec2
import config as Cfg
from state import StateManager

ENDPOINTS = "10.0.0.1:8080,az=zone-a;10.0.0.2:8080,az=zone-b;10.0.0.3:8080,az=zone-a"


@pytest.fixture
def static_ec2(ctx):
    Cfg.set("fleet.static.endpoints", ENDPOINTS)
    o_ec2 = ec2.EC2(ctx, StateManager(ctx))
    o_ec2.get_prerequisites()
    return o_ec2


def test_static_subnets_one_per_zone(static_ec2):
    assert [s["AvailabilityZone"] for s in static_ec2.get_subnets()] == ["zone-a", "zone-b"]


def test_static_provisioner_rejects_malformed_endpoint(ctx):
    Cfg.set("fleet.static.endpoints", "10.0.0.1")
    with pytest.raises(Cfg.ConfigurationError):
        ec2.EC2(ctx, StateManager(ctx))


def test_placement_balances_zones(static_ec2):
    first  = static_ec2.launch_instance()
    second = static_ec2.launch_instance()
    third  = static_ec2.launch_instance()
    assert first["Placement"]["AvailabilityZone"] == "zone-a"
    assert second["Placement"]["AvailabilityZone"] == "zone-b"
    # zone-a and zone-b hold one instance each: first subnet wins
    assert third["Placement"]["AvailabilityZone"] == "zone-a"
    assert static_ec2.get_fleet_size() == 3
    assert static_ec2.get_instance_address(first) == ("10.0.0.1", 8080)


def test_static_pool_exhaustion(static_ec2):
    for _ in range(3):
        static_ec2.launch_instance()
    with pytest.raises(ec2.ProvisioningError):
        static_ec2.launch_instance()


def test_terminate_releases_endpoint(static_ec2):
    first = static_ec2.launch_instance()
    static_ec2.terminate_instance(first["InstanceId"])
    static_ec2.get_prerequisites()
    assert static_ec2.get_instances() == []
    replacement = static_ec2.launch_instance()
    # The released endpoint goes last in the pool
    assert replacement["PrivateIpAddress"] == "10.0.0.3"
    assert list(static_ec2.provisioner.instances) == [replacement["InstanceId"]]


def test_terminate_unknown_instance(static_ec2):
    with pytest.raises(ec2.ProvisioningError):
        static_ec2.terminate_instance("i-unknown")


def test_desired_capacity_is_clamped(static_ec2):
    assert static_ec2.get_desired_capacity() == 3
    assert static_ec2.set_desired_capacity(10) == 6
    assert static_ec2.get_desired_capacity() == 6
    assert static_ec2.set_desired_capacity(0) == 3


def test_scaling_state_filters(static_ec2):
    first  = static_ec2.launch_instance()
    second = static_ec2.launch_instance()
    static_ec2.set_scaling_state(first["InstanceId"], "draining")
    assert static_ec2.get_instance_ids(static_ec2.get_instances(ScalingState="draining")) == [first["InstanceId"]]
    assert static_ec2.get_instance_ids(static_ec2.get_active_instances()) == [second["InstanceId"]]
    meta = {}
    assert static_ec2.get_scaling_state(first["InstanceId"], meta=meta) == "draining"
    assert meta["last_action_date"] == static_ec2.context["now"]


def test_unknown_provisioner(ctx):
    Cfg.set("ec2.provisioner", "docker")
    with pytest.raises(Cfg.ConfigurationError):
        ec2.EC2(ctx, StateManager(ctx))


def _image_id():
    client = boto3.client("ec2", region_name="us-east-1")
    return client.describe_images()["Images"][0]["ImageId"]


def test_ec2_provisioner_launch_and_terminate(mocked_aws, ctx):
    Cfg.set("ec2.provisioner", "ec2")
    Cfg.set("ec2.image_id", _image_id())
    o_ec2 = ec2.EC2(ctx, StateManager(ctx))
    o_ec2.get_prerequisites()
    zones = [s["AvailabilityZone"] for s in o_ec2.get_subnets()]
    assert len(zones) == len(set(zones)) > 1

    instance = o_ec2.launch_instance()
    assert instance["Placement"]["AvailabilityZone"] == zones[0]
    assert instance["InstanceType"] == "t2.micro"

    o_ec2.get_prerequisites()
    assert o_ec2.get_instance_ids(o_ec2.get_instances()) == [instance["InstanceId"]]
    tags = {t["Key"]: t["Value"] for t in o_ec2.get_instances()[0]["Tags"]}
    assert tags[ec2.GROUP_TAG] == "test-fleet"

    o_ec2.terminate_instance(instance["InstanceId"])
    o_ec2.get_prerequisites()
    assert o_ec2.get_instances() == []


def test_ec2_provisioner_only_sees_its_group(mocked_aws, ctx):
    client = boto3.client("ec2", region_name="us-east-1")
    client.run_instances(ImageId=_image_id(), MinCount=1, MaxCount=1)
    Cfg.set("ec2.provisioner", "ec2")
    o_ec2 = ec2.EC2(ctx, StateManager(ctx))
    o_ec2.get_prerequisites()
    assert o_ec2.get_instances() == []


def test_image_id_from_ssm_parameter(mocked_aws, ctx):
    boto3.client("ssm", region_name="us-east-1").put_parameter(Name="/webfleet/ami", Value="ami-0abcdef1234567890",
            Type="String")
    Cfg.set("ec2.provisioner", "ec2")
    o_ec2 = ec2.EC2(ctx, StateManager(ctx))
    Cfg.set("ec2.image_ssm_parameter", "/webfleet/ami")
    assert o_ec2.provisioner.get_image_id() == "ami-0abcdef1234567890"


def test_missing_ssm_parameter_is_a_provisioning_error(mocked_aws, ctx):
    Cfg.set("ec2.provisioner", "ec2")
    o_ec2 = ec2.EC2(ctx, StateManager(ctx))
    Cfg.set("ec2.image_ssm_parameter", "/webfleet/missing")
    with pytest.raises(ec2.ProvisioningError):
        o_ec2.provisioner.get_image_id()
