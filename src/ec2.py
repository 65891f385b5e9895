""" ec2.py

License: MIT

This module manages the inventory of the fleet instances.

The module manages:
    * Querying the provisioner to get the instance list and statuses,
    * Launching and terminating instances (through a provisioner),
    * The desired capacity of the fleet (always clamped to [min_capacity, max_capacity]),
    * Per-instance scaling states (ex: 'draining').

Instances are dicts following the EC2.describe_instances() shape ('InstanceId', 'State', 'Placement', 'PrivateIpAddress',
'SubnetId', 'LaunchTime'). Extra fields computed locally are prefixed with '_'.

Two provisioners are available:
    * EC2Provisioner: launches real EC2 instances with boto3,
    * StaticProvisioner: hands out endpoints of a fixed pool of pre-existing hosts (pet mode, local runs).

As all other major modules, the get_prerequisites() method pre-computes all data needed for all the methods: code outside
get_prerequisites() works only with the data gathered there.
"""
import re
import copy
import itertools
from datetime import timedelta
from botocore.exceptions import ClientError, BotoCoreError

import misc
import config as Cfg
import bootstrap
import topology
from notify import record_call as R

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

GROUP_TAG = "webfleet:group-name"


class ProvisioningError(Exception):
    pass


class EC2Provisioner:
    """ Launch and terminate EC2 instances tagged with the fleet group name.
    """
    def __init__(self, context):
        self.context = context
        misc.initialize_clients(["ec2", "ssm"], context)
        self.client  = context["ec2.client"]

    def get_image_id(self):
        image_id = Cfg.get("ec2.image_id")
        if image_id != "":
            return image_id
        parameter = Cfg.get("ec2.image_ssm_parameter")
        try:
            response = self.context["ssm.client"].get_parameter(Name=parameter)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError("Failed to resolve AMI from SSM parameter '%s' : %s" % (parameter, e))
        return response["Parameter"]["Value"]

    def get_subnets(self):
        return topology.discover_public_subnets(self.context, vpc_id=Cfg.get("ec2.vpc_id") or None)

    def describe_instances(self):
        Filters   = [{'Name': 'tag:%s' % GROUP_TAG, 'Values': [self.context["GroupName"]]}]
        instances = []
        paginator = self.client.get_paginator('describe_instances')
        for response in paginator.paginate(Filters=Filters):
            for reservation in response["Reservations"]:
                instances.extend(reservation["Instances"])
        return instances

    def launch(self, subnet, user_data):
        params = {
            "ImageId"     : self.get_image_id(),
            "InstanceType": Cfg.get("ec2.instance_type"),
            "MinCount"    : 1,
            "MaxCount"    : 1,
            "SubnetId"    : subnet["SubnetId"],
            "UserData"    : user_data,
            "TagSpecifications": [{
                "ResourceType": "instance",
                "Tags": [
                    {"Key": GROUP_TAG, "Value": self.context["GroupName"]},
                    {"Key": "Name",    "Value": "%s/WebASG" % self.context["GroupName"]}
                ]
            }]
        }
        instance_profile = Cfg.get("ec2.instance_profile")
        if instance_profile != "":
            params["IamInstanceProfile"] = {"Name": instance_profile}
        try:
            response = self.client.run_instances(**params)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError("Failed to launch instance in subnet '%s' : %s" % (subnet["SubnetId"], e))
        return response["Instances"][0]

    def terminate(self, instance_id):
        try:
            response = self.client.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError("Failed to terminate instance '%s' : %s" % (instance_id, e))
        return response["TerminatingInstances"]


class StaticProvisioner:
    """ Hand out endpoints of a fixed pool of pre-existing hosts as fleet instances.

    Endpoints are read from 'fleet.static.endpoints' (ex: "10.0.0.1:8080,az=zone-a;10.0.0.2:8080,az=zone-b").
    A launch takes a free endpoint (in the requested AZ first) and a termination gives it back to the pool.
    """
    def __init__(self, context):
        self.context   = context
        self.instances = {}
        self.counter   = itertools.count(1)
        self.endpoints = []
        for e in Cfg.get_list_of_dict("fleet.static.endpoints"):
            m = re.match(r"^(.+):([0-9]+)$", e["_"])
            if m is None:
                raise Cfg.ConfigurationError("Malformed static endpoint '%s' (expected <host>:<port>)!" % e["_"])
            self.endpoints.append({
                "Address"          : m.group(1),
                "Port"             : int(m.group(2)),
                "AvailabilityZone" : e["az"] if e["az"] != "" else "static"
            })

    def get_subnets(self):
        subnets = [{"SubnetId": "subnet-static-%s" % e["AvailabilityZone"], "AvailabilityZone": e["AvailabilityZone"]}
                for e in self.endpoints]
        return topology.distinct_az_subnets(subnets)

    def describe_instances(self):
        return [copy.deepcopy(i) for i in self.instances.values()]

    def _used_endpoints(self):
        return [(i["PrivateIpAddress"], i["_Port"]) for i in self.describe_instances()]

    def launch(self, subnet, user_data):
        used       = self._used_endpoints()
        free       = [e for e in self.endpoints if (e["Address"], e["Port"]) not in used]
        candidates = [e for e in free if e["AvailabilityZone"] == subnet["AvailabilityZone"]]
        if len(candidates) == 0:
            candidates = free
        if len(candidates) == 0:
            raise ProvisioningError("No free endpoint left in 'fleet.static.endpoints' (%d endpoints all in use)!" % len(self.endpoints))
        endpoint    = candidates[0]
        instance_id = "i-static%09d" % next(self.counter)
        instance = {
            "InstanceId"      : instance_id,
            "State"           : {"Name": "running"},
            "Placement"       : {"AvailabilityZone": endpoint["AvailabilityZone"]},
            "SubnetId"        : "subnet-static-%s" % endpoint["AvailabilityZone"],
            "PrivateIpAddress": endpoint["Address"],
            "LaunchTime"      : self.context["now"],
            "_Port"           : endpoint["Port"]
        }
        self.instances[instance_id] = instance
        return copy.deepcopy(instance)

    def terminate(self, instance_id):
        if instance_id not in self.instances:
            raise ProvisioningError("Unknown static instance '%s'!" % instance_id)
        instance = self.instances.pop(instance_id)
        # Released endpoints go last so a replacement does not land on the endpoint just removed
        endpoint = next(filter(lambda e: (e["Address"], e["Port"]) == (instance["PrivateIpAddress"], instance["_Port"]),
            self.endpoints), None)
        if endpoint is not None:
            self.endpoints.remove(endpoint)
            self.endpoints.append(endpoint)
        return [{"InstanceId": instance_id, "CurrentState": {"Name": "terminated"}}]


def create_provisioner(context):
    kind = Cfg.get("ec2.provisioner")
    if kind == "ec2":
        return EC2Provisioner(context)
    if kind == "static":
        return StaticProvisioner(context)
    raise Cfg.ConfigurationError("Unknown provisioner '%s' (expected 'ec2' or 'static')!" % kind)


class EC2:
    @xray_recorder.capture(name="EC2.__init__")
    def __init__(self, context, o_state, provisioner=None):
        self.context      = context
        self.o_state      = o_state
        self.instances    = []
        self.subnets      = None
        self.prereqs_done = False

        Cfg.register({
                 "ec2.provisioner,Stable": {
                     "DefaultValue": "static",
                     "Format"      : "String",
                     "Description" : """Backend used to create fleet instances: 'ec2' or 'static'.

With 'ec2', instances are launched with EC2.run_instances() in the public subnets of the default VPC (one subnet
per availability zone). With 'static', instances are taken from the fixed endpoint pool
[`fleet.static.endpoints`](#fleetstaticendpoints).
                     """
                 },
                 "fleet.static.endpoints,Stable": {
                     "DefaultValue": "",
                     "Format"      : "MetaStringList",
                     "Description" : """Endpoint pool of the 'static' provisioner.

    Ex: 10.0.0.1:8080,az=eu-west-1a;10.0.0.2:8080,az=eu-west-1b
                     """
                 },
                 "ec2.instance_type": "t2.micro",
                 "ec2.image_id": "",
                 "ec2.image_ssm_parameter": "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2",
                 "ec2.instance_profile": "",
                 "ec2.vpc_id": "",
                 "ec2.state.default_ttl": "days=1",
        }, ignore_double_definition=True)
        self.ttl         = Cfg.get_duration_secs("ec2.state.default_ttl")
        self.provisioner = provisioner if provisioner is not None else create_provisioner(context)

    @property
    def settings(self):
        return self.context["settings"]

    @xray_recorder.capture(name="EC2.get_prerequisites")
    def get_prerequisites(self, only_if_not_already_done=False):
        """ Gather instance statuses from the provisioner.
        """
        if only_if_not_already_done and self.prereqs_done:
            return

        if self.subnets is None:
            self.subnets = self.provisioner.get_subnets()
            if len(self.subnets) == 0:
                raise ProvisioningError("No subnet available to place the fleet!")

        instances = self.provisioner.describe_instances()
        # Filter out instances with inappropriate state
        self.instances = [i for i in instances if i["State"]["Name"] not in ["shutting-down", "terminated"]]
        self.prereqs_done = True

    def get_subnets(self):
        return self.subnets

    def get_instances(self, State=None, ScalingState=None, instances=None):
        """ Return the instance list filtered by EC2 state and scaling state.

        :param State:        Comma separated list of EC2 states (ex: "pending,running")
        :param ScalingState: Comma separated list of scaling states. A leading '-' negates the filter (ex: "-draining")
        """
        if instances is None: instances = self.instances
        r = []
        for i in instances:
            if State is not None and i["State"]["Name"] not in State.split(","):
                continue
            if ScalingState is not None:
                scaling_state = self.get_scaling_state(i["InstanceId"])
                if ScalingState.startswith("-"):
                    if scaling_state in ScalingState[1:].split(","):
                        continue
                elif scaling_state not in ScalingState.split(","):
                    continue
            r.append(i)
        return r

    def get_instance_ids(self, instances):
        return [i["InstanceId"] for i in instances]

    def get_instance_by_id(self, instance_id):
        return next(filter(lambda i: i["InstanceId"] == instance_id, self.instances), None)

    def get_active_instances(self):
        """ Instances that make the fleet size: pending or running and not leaving the fleet.
        """
        return self.get_instances(State="pending,running", ScalingState="-draining")

    def get_fleet_size(self):
        return len(self.get_active_instances())

    def get_instance_address(self, instance):
        port = instance.get("_Port", self.settings.target_port)
        return instance.get("PrivateIpAddress"), port

    ###############################################
    #### DESIRED CAPACITY #########################
    ###############################################

    def clamp_capacity(self, count):
        return max(self.settings.min_capacity, min(self.settings.max_capacity, int(count)))

    def get_desired_capacity(self):
        desired = self.o_state.get_state_int("ec2.fleet.desired_capacity", default=self.settings.min_capacity)
        return self.clamp_capacity(desired)

    def set_desired_capacity(self, count):
        desired = self.clamp_capacity(count)
        if desired != count:
            log.info("Desired capacity %s clamped to %s (bounds=[%s, %s])." %
                    (count, desired, self.settings.min_capacity, self.settings.max_capacity))
        self.o_state.set_state("ec2.fleet.desired_capacity", desired, TTL=0)
        return desired

    ###############################################
    #### SCALING STATES ###########################
    ###############################################

    def get_scaling_state(self, instance_id, meta=None):
        key   = "ec2.instance.scaling.state.%s" % instance_id
        value = self.o_state.get_state(key, default="")
        if meta is not None:
            meta["last_action_date"] = self.o_state.get_state_date("%s.date" % key)
        return value

    def set_scaling_state(self, instance_id, value):
        key = "ec2.instance.scaling.state.%s" % instance_id
        self.o_state.set_state(key, value, TTL=self.ttl)
        self.o_state.set_state("%s.date" % key, self.context["now"] if value != "" else "", TTL=self.ttl)

    def get_state(self, key, default=None):
        return self.o_state.get_state(key, default=default)

    def get_state_date(self, key, default=None):
        return self.o_state.get_state_date(key, default=default)

    def set_state(self, key, value, TTL=None):
        self.o_state.set_state(key, value, TTL=self.ttl if TTL is None else TTL)

    ###############################################
    #### INSTANCE ACTIONS #########################
    ###############################################

    def choose_subnet(self):
        """ Return the subnet of the availability zone holding the fewest active instances (first subnet on ties).
        """
        active = self.get_active_instances()
        def _count(subnet):
            return len([i for i in active if i["Placement"]["AvailabilityZone"] == subnet["AvailabilityZone"]])
        return min(self.subnets, key=_count)

    def launch_instance(self):
        subnet   = self.choose_subnet()
        instance = R(None, self.provisioner_launch, SubnetId=subnet["SubnetId"],
                AvailabilityZone=subnet["AvailabilityZone"])
        # Newly launched instances are visible immediately to the rest of the control pass
        if instance.get("LaunchTime") is None:
            instance["LaunchTime"] = self.context["now"]
        self.instances.append(instance)
        self.set_state("ec2.instance.launch_date.%s" % instance["InstanceId"], self.context["now"])
        return instance

    def provisioner_launch(self, SubnetId=None, AvailabilityZone=None):
        subnet = next(filter(lambda s: s["SubnetId"] == SubnetId, self.subnets))
        return self.provisioner.launch(subnet, bootstrap.render_user_data())

    def terminate_instance(self, instance_id):
        R(None, self.provisioner_terminate, InstanceId=instance_id)
        instance = self.get_instance_by_id(instance_id)
        if instance is not None:
            instance["State"]["Name"] = "shutting-down"
        self.set_scaling_state(instance_id, "")
        self.o_state.set_state("ec2.instance.launch_date.%s" % instance_id, "")

    def provisioner_terminate(self, InstanceId=None):
        return self.provisioner.terminate(InstanceId)

    def get_instance_age(self, instance):
        launch_date = self.get_state_date("ec2.instance.launch_date.%s" % instance["InstanceId"],
                default=misc.str2utc(instance.get("LaunchTime")))
        if launch_date is None:
            return timedelta(seconds=0)
        return self.context["now"] - launch_date
