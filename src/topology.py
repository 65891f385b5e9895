""" topology.py

License: MIT

Static shape of the web stack: capacity bounds, scaling policy, listener, health check and alarm settings
(gathered into one FleetSettings struct read from configuration) and the network placement of the fleet
(one public subnet per availability zone of the default VPC).
"""
from dataclasses import dataclass
from dataclasses import asdict

import misc
import config as Cfg

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

COMPARISON_OPERATORS = [
    "GreaterThanOrEqualToThreshold",
    "GreaterThanThreshold",
    "LessThanThreshold",
    "LessThanOrEqualToThreshold"
]
TREAT_MISSING_DATA = ["missing", "notBreaching", "breaching", "ignore"]

# Log-write only permissions for the fleet instances
INSTANCE_ROLE_MANAGED_POLICIES = ["CloudWatchLogsFullAccess"]


def register_config():
    Cfg.register({
             "fleet.min_capacity,Stable": {
                 "DefaultValue": 3,
                 "Format"      : "PositiveInteger",
                 "Description" : """Minimum number of instances in the fleet.

The fleet controller never scales below this bound, even under no load, and replaces failing instances to keep it.
                 """
             },
             "fleet.max_capacity,Stable": {
                 "DefaultValue": 6,
                 "Format"      : "PositiveInteger",
                 "Description" : """Maximum number of instances in the fleet.

The fleet controller never scales above this bound, even under sustained high load.
                 """
             },
             "fleet.scaling.target_utilization,Stable": {
                 "DefaultValue": 80,
                 "Format"      : "Float",
                 "Description" : """Target average CPU utilization (percent) of the fleet.

The fleet controller adds capacity when the utilization stays above the target and removes capacity when it
stays well below (see [`fleet.scaling.scalein.threshold_ratio`](#fleetscalingscaleinthreshold_ratio)).
                 """
             },
             "fleet.scaling.scaleout.breach_duration,Stable": {
                 "DefaultValue": "minutes=3",
                 "Format"      : "Duration",
                 "Description" : """How long the utilization must stay above target before a scaleout.
                 """
             },
             "fleet.scaling.scalein.breach_duration,Stable": {
                 "DefaultValue": "minutes=15",
                 "Format"      : "Duration",
                 "Description" : """How long the utilization must stay below the scalein threshold before a scalein.
                 """
             },
             "fleet.scaling.scalein.threshold_ratio,Stable": {
                 "DefaultValue": 0.9,
                 "Format"      : "Float",
                 "Description" : """Ratio of the target utilization under which the fleet is considered over-provisioned.
                 """
             },
             "fleet.scaling.scaleout.cooldown_delay,Stable": {
                 "DefaultValue": "seconds=300",
                 "Format"      : "Duration",
                 "Description" : """Minimum delay between a scaling action and the next scaleout.
                 """
             },
             "fleet.scaling.scalein.cooldown_delay,Stable": {
                 "DefaultValue": "seconds=300",
                 "Format"      : "Duration",
                 "Description" : """Minimum delay between a scaling action and the next scalein.
                 """
             },
             "fleet.health.replacement_grace_period": "seconds=300",
             "listener.port,Stable": {
                 "DefaultValue": 80,
                 "Format"      : "PositiveInteger",
                 "Description" : """Port of the load balancer listener (open to all source addresses).
                 """
             },
             "listener.bind_address": "0.0.0.0",
             "targetgroup.port": 80,
             "targetgroup.healthcheck.path": "/",
             "targetgroup.healthcheck.interval,Stable": {
                 "DefaultValue": "seconds=30",
                 "Format"      : "Duration",
                 "Description" : """Period between two health probes of the same target.
                 """
             },
             "targetgroup.healthcheck.timeout": "seconds=5",
             "targetgroup.healthcheck.healthy_threshold,Stable": {
                 "DefaultValue": 2,
                 "Format"      : "PositiveInteger",
                 "Description" : """Consecutive successful probes needed for a target to become healthy.
                 """
             },
             "targetgroup.healthcheck.unhealthy_threshold,Stable": {
                 "DefaultValue": 3,
                 "Format"      : "PositiveInteger",
                 "Description" : """Consecutive failed probes after which a target is unhealthy and excluded from routing.
                 """
             },
             "targetgroup.deregistration_delay,Stable": {
                 "DefaultValue": "seconds=300",
                 "Format"      : "Duration",
                 "Description" : """Maximum time a draining target is kept to let its in-flight requests complete.
                 """
             },
             "cloudwatch.alarm.5xx.threshold,Stable": {
                 "DefaultValue": 10,
                 "Format"      : "Float",
                 "Description" : """Number of server errors (5XX) per period that puts the alarm in ALARM state.
                 """
             },
             "cloudwatch.alarm.5xx.evaluation_periods,Stable": {
                 "DefaultValue": 1,
                 "Format"      : "PositiveInteger",
                 "Description" : """Number of consecutive breaching periods before the alarm goes to ALARM.
                 """
             },
             "cloudwatch.alarm.5xx.period": "minutes=5",
             "cloudwatch.alarm.5xx.comparison_operator": "GreaterThanOrEqualToThreshold",
             "cloudwatch.alarm.5xx.treat_missing_data": "missing",
             "cloudwatch.alarm.5xx.metric_names": "HTTPCode_ELB_5XX_Count;HTTPCode_Target_5XX_Count",
    }, ignore_double_definition=True)


@dataclass
class FleetSettings:
    """ Explicit configuration of the control loops. Built once per control pass from the configuration.
    """
    min_capacity: int = 3
    max_capacity: int = 6
    target_utilization: float = 80.0
    scaleout_breach_duration: float = 180
    scalein_breach_duration: float = 900
    scalein_threshold_ratio: float = 0.9
    scaleout_cooldown: float = 300
    scalein_cooldown: float = 300
    replacement_grace_period: float = 300
    listener_port: int = 80
    bind_address: str = "0.0.0.0"
    target_port: int = 80
    health_check_path: str = "/"
    health_check_interval: float = 30
    health_check_timeout: float = 5
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    deregistration_delay: float = 300
    alarm_threshold: float = 10
    alarm_evaluation_periods: int = 1
    alarm_period: float = 300
    alarm_comparison_operator: str = "GreaterThanOrEqualToThreshold"
    alarm_treat_missing_data: str = "missing"
    alarm_metric_names: tuple = ("HTTPCode_ELB_5XX_Count", "HTTPCode_Target_5XX_Count")

    @staticmethod
    def from_config():
        settings = FleetSettings(
            min_capacity=Cfg.get_int("fleet.min_capacity"),
            max_capacity=Cfg.get_int("fleet.max_capacity"),
            target_utilization=Cfg.get_float("fleet.scaling.target_utilization"),
            scaleout_breach_duration=Cfg.get_duration_secs("fleet.scaling.scaleout.breach_duration"),
            scalein_breach_duration=Cfg.get_duration_secs("fleet.scaling.scalein.breach_duration"),
            scalein_threshold_ratio=Cfg.get_float("fleet.scaling.scalein.threshold_ratio"),
            scaleout_cooldown=Cfg.get_duration_secs("fleet.scaling.scaleout.cooldown_delay"),
            scalein_cooldown=Cfg.get_duration_secs("fleet.scaling.scalein.cooldown_delay"),
            replacement_grace_period=Cfg.get_duration_secs("fleet.health.replacement_grace_period"),
            listener_port=Cfg.get_int("listener.port"),
            bind_address=Cfg.get("listener.bind_address"),
            target_port=Cfg.get_int("targetgroup.port"),
            health_check_path=Cfg.get("targetgroup.healthcheck.path"),
            health_check_interval=Cfg.get_duration_secs("targetgroup.healthcheck.interval"),
            health_check_timeout=Cfg.get_duration_secs("targetgroup.healthcheck.timeout"),
            healthy_threshold=Cfg.get_int("targetgroup.healthcheck.healthy_threshold"),
            unhealthy_threshold=Cfg.get_int("targetgroup.healthcheck.unhealthy_threshold"),
            deregistration_delay=Cfg.get_duration_secs("targetgroup.deregistration_delay"),
            alarm_threshold=Cfg.get_float("cloudwatch.alarm.5xx.threshold"),
            alarm_evaluation_periods=Cfg.get_int("cloudwatch.alarm.5xx.evaluation_periods"),
            alarm_period=Cfg.get_duration_secs("cloudwatch.alarm.5xx.period"),
            alarm_comparison_operator=Cfg.get("cloudwatch.alarm.5xx.comparison_operator"),
            alarm_treat_missing_data=Cfg.get("cloudwatch.alarm.5xx.treat_missing_data"),
            alarm_metric_names=tuple(Cfg.get_list("cloudwatch.alarm.5xx.metric_names", default=[])),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.min_capacity < 0:
            raise Cfg.ConfigurationError("'fleet.min_capacity' must be positive (%s)!" % self.min_capacity)
        if self.max_capacity < self.min_capacity:
            raise Cfg.ConfigurationError("'fleet.max_capacity' (%s) can't be lower than 'fleet.min_capacity' (%s)!" %
                    (self.max_capacity, self.min_capacity))
        if not 0 < self.target_utilization <= 100:
            raise Cfg.ConfigurationError("'fleet.scaling.target_utilization' must be in ]0, 100] (%s)!" % self.target_utilization)
        if not 0 < self.scalein_threshold_ratio <= 1:
            raise Cfg.ConfigurationError("'fleet.scaling.scalein.threshold_ratio' must be in ]0, 1] (%s)!" % self.scalein_threshold_ratio)
        if self.healthy_threshold < 1 or self.unhealthy_threshold < 1:
            raise Cfg.ConfigurationError("Health check thresholds must be at least 1!")
        if self.alarm_evaluation_periods < 1 or self.alarm_period <= 0:
            raise Cfg.ConfigurationError("Alarm evaluation periods and period must be strictly positive!")
        if self.alarm_comparison_operator not in COMPARISON_OPERATORS:
            raise Cfg.ConfigurationError("Unknown alarm comparison operator '%s'!" % self.alarm_comparison_operator)
        if self.alarm_treat_missing_data not in TREAT_MISSING_DATA:
            raise Cfg.ConfigurationError("Unknown alarm missing data treatment '%s'!" % self.alarm_treat_missing_data)

    def to_dict(self):
        return asdict(self)


def distinct_az_subnets(subnets):
    """ Return one subnet per distinct availability zone.

    The first subnet seen for an AZ wins and the result keeps the input order, so the same subnet list always
    gives the same selection.

    :param subnets: List of subnet dicts (EC2.describe_subnets() shape, at least 'SubnetId' and 'AvailabilityZone')
    :return A list of subnet dicts
    """
    selected = {}
    for subnet in subnets:
        az = subnet["AvailabilityZone"]
        if az not in selected:
            selected[az] = subnet
    return list(selected.values())


@xray_recorder.capture()
def discover_public_subnets(ctx, vpc_id=None):
    """ Look up the public subnets of the default VPC (or of 'vpc_id') deduplicated by availability zone.
    """
    misc.initialize_clients(["ec2"], ctx)
    client = ctx["ec2.client"]
    if vpc_id is None:
        response = client.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}])
        if len(response["Vpcs"]) == 0:
            raise Cfg.ConfigurationError("No default VPC in this region!")
        vpc_id = response["Vpcs"][0]["VpcId"]

    subnets   = []
    paginator = client.get_paginator("describe_subnets")
    for response in paginator.paginate(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]):
        subnets.extend(response["Subnets"])
    public_subnets = [s for s in subnets if s.get("MapPublicIpOnLaunch")]
    # Stable order independent of the API listing order
    public_subnets = sorted(public_subnets, key=lambda s: (s["AvailabilityZone"], s["SubnetId"]))
    selected       = distinct_az_subnets(public_subnets)
    log.info("Selected subnets for VPC %s: %s" % (vpc_id, [(s["SubnetId"], s["AvailabilityZone"]) for s in selected]))
    return selected


def instance_role_policy_arns(partition="aws"):
    return ["arn:%s:iam::aws:policy/%s" % (partition, p) for p in INSTANCE_ROLE_MANAGED_POLICIES]
