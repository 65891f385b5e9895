""" targetgroup.py

License: MIT

Target group of the load balancer: registration of fleet instances, periodic health checks and target selection
for the router.

Target health states follow the ELBv2 vocabulary:
    * 'initial': registered, not yet passed enough health checks,
    * 'healthy': receives traffic,
    * 'unhealthy': failed 'unhealthy_threshold' consecutive probes, excluded from routing,
    * 'draining': deregistration in progress; receives no new request and is not probed anymore.

The router threads and the control loop share the target table: all accesses are done under a lock.
"""
import threading

import requests

import config as Cfg
import debug as Dbg
from notify import record_call as R

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

REASONS = {
    "initial"  : "Elb.RegistrationInProgress",
    "healthy"  : "",
    "unhealthy": "Target.FailedHealthChecks",
    "draining" : "Target.DeregistrationInProgress"
}


class HttpProber:
    """ Health probe: 'GET <path>' on the target, healthy on a 200 response received before the timeout.
    """
    def __init__(self, session=None):
        self.session = session if session is not None else requests.Session()

    def __call__(self, address, port, path, timeout):
        url = "http://%s:%s%s" % (address, port, path)
        try:
            response = self.session.get(url, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            log.debug("Health probe '%s' failed: %s" % (url, e))
            return False
        return response.status_code == 200


class ManagedTargetGroup:
    @xray_recorder.capture(name="ManagedTargetGroup.__init__")
    def __init__(self, context, ec2, prober=None):
        self.context      = context
        self.ec2          = ec2
        self.prober       = prober if prober is not None else HttpProber()
        self.lock         = threading.Lock()
        self.targets      = {}
        self.rr_counter   = 0
        self.prereqs_done = False
        Cfg.register({
            "targetgroup.debug.inject_fault_status": "",
        }, ignore_double_definition=True)

    @property
    def settings(self):
        return self.context["settings"]

    def get_prerequisites(self, only_if_not_already_done=False):
        if only_if_not_already_done and self.prereqs_done:
            return
        directives = Cfg.get("targetgroup.debug.inject_fault_status")
        if directives != "":
            log.warning("'targetgroup.debug.inject_fault_status' set to %s!" % directives)
        self.prereqs_done = True

    def debug_inject_fault(self, target, nolog=False):
        """ Return the forced probe result of a target, or None when no fault is injected.

        Directives are a comma separated list of '<instance_id|availability_zone>:<healthy|unhealthy>'.
        """
        for directive in Cfg.get("targetgroup.debug.inject_fault_status").split(","):
            if directive == "": continue
            criteria, fault = directive.split(":")
            if criteria in [target["Target"]["Id"], target["Target"]["AvailabilityZone"]]:
                if not nolog:
                    log.warning("Injecting targetgroup fault '%s' for target '%s'!" % (fault, target["Target"]["Id"]))
                return fault == "healthy"
        return None

    ###############################################
    #### TARGET TABLE #############################
    ###############################################

    def _new_target(self, instance):
        address, port = self.ec2.get_instance_address(instance)
        return {
            "Target": {
                "Id"              : instance["InstanceId"],
                "Port"            : port,
                "AvailabilityZone": instance["Placement"]["AvailabilityZone"]
            },
            "Address"     : address,
            "TargetHealth": {"State": "initial", "Reason": REASONS["initial"]},
            "HealthCheckPort"      : port,
            "_ConsecutiveSuccesses": 0,
            "_ConsecutiveFailures" : 0,
            "_LastProbeDate"       : None,
            "_RegistrationDate"    : self.context["now"],
            "_DrainingStartDate"   : None,
            "_InFlight"            : 0
        }

    def _set_health(self, target, state):
        target["TargetHealth"] = {"State": state, "Reason": REASONS[state]}

    def get_target(self, instance_id):
        with self.lock:
            t = self.targets.get(instance_id)
            return dict(t) if t is not None else None

    def get_targets(self, state=None):
        """ Return a copy of the registered targets, optionally filtered by a comma separated list of states.
        """
        with self.lock:
            return [dict(t) for t in sorted(self.targets.values(), key=lambda t: t["Target"]["Id"])
                    if state is None or t["TargetHealth"]["State"] in state.split(",")]

    def get_registered_instance_ids(self, state=None):
        return [t["Target"]["Id"] for t in self.get_targets(state=state)]

    def is_instance_registered(self, instance_id, fail_if_draining=False):
        t = self.get_target(instance_id)
        if t is None:
            return None
        if fail_if_draining and t["TargetHealth"]["State"] == "draining":
            return None
        return t

    def describe_target_health(self):
        return [{
                "Target"      : dict(t["Target"]),
                "TargetHealth": dict(t["TargetHealth"]),
                "InFlight"    : t["_InFlight"]
            } for t in self.get_targets()]

    def register_targets(self, Targets=None):
        instances = [self.ec2.get_instance_by_id(t["Id"]) for t in Targets]
        with self.lock:
            for instance in instances:
                self.targets[instance["InstanceId"]] = self._new_target(instance)
        return Targets

    def deregister_targets(self, Targets=None):
        """ Start draining of the specified targets.
        """
        with self.lock:
            for t in Targets:
                target = self.targets.get(t["Id"])
                if target is None or target["TargetHealth"]["State"] == "draining":
                    continue
                self._set_health(target, "draining")
                target["_DrainingStartDate"] = self.context["now"]
        return Targets

    def remove_target(self, instance_id):
        with self.lock:
            self.targets.pop(instance_id, None)

    ###############################################
    #### ROUTING ##################################
    ###############################################

    def select_target(self):
        """ Pick the next healthy target in round robin order and account one in-flight request on it.

        :return A dict with 'Id', 'Address' and 'Port' or None when no target is healthy
        """
        with self.lock:
            healthy = sorted([t for t in self.targets.values() if t["TargetHealth"]["State"] == "healthy"],
                    key=lambda t: t["Target"]["Id"])
            if len(healthy) == 0:
                return None
            target = healthy[self.rr_counter % len(healthy)]
            self.rr_counter += 1
            target["_InFlight"] += 1
            return {
                "Id"     : target["Target"]["Id"],
                "Address": target["Address"],
                "Port"   : target["Target"]["Port"]
            }

    def release_target(self, instance_id):
        with self.lock:
            target = self.targets.get(instance_id)
            if target is not None and target["_InFlight"] > 0:
                target["_InFlight"] -= 1

    ###############################################
    #### HEALTH CHECKS ############################
    ###############################################

    def record_probe_result(self, instance_id, success):
        """ Update the consecutive probe counters of a target and return the (previous, new) health state.
        """
        settings = self.settings
        with self.lock:
            target = self.targets.get(instance_id)
            if target is None or target["TargetHealth"]["State"] == "draining":
                return None
            previous = target["TargetHealth"]["State"]
            target["_LastProbeDate"] = self.context["now"]
            if success:
                target["_ConsecutiveSuccesses"] += 1
                target["_ConsecutiveFailures"]   = 0
                if previous != "healthy" and target["_ConsecutiveSuccesses"] >= settings.healthy_threshold:
                    self._set_health(target, "healthy")
            else:
                target["_ConsecutiveFailures"]  += 1
                target["_ConsecutiveSuccesses"]  = 0
                if previous != "unhealthy" and target["_ConsecutiveFailures"] >= settings.unhealthy_threshold:
                    self._set_health(target, "unhealthy")
            return previous, target["TargetHealth"]["State"]

    def get_targets_due_for_probe(self):
        now      = self.context["now"]
        interval = self.settings.health_check_interval
        return [t for t in self.get_targets(state="initial,healthy,unhealthy")
                if t["_LastProbeDate"] is None or (now - t["_LastProbeDate"]).total_seconds() >= interval]

    @xray_recorder.capture()
    def run_health_checks(self):
        settings    = self.settings
        transitions = []
        for target in self.get_targets_due_for_probe():
            instance_id = target["Target"]["Id"]
            success     = self.debug_inject_fault(target)
            if success is None:
                success = self.prober(target["Address"], target["Target"]["Port"],
                        settings.health_check_path, settings.health_check_timeout)
            r = self.record_probe_result(instance_id, success)
            if r is not None and r[0] != r[1]:
                transitions.append({
                    "InstanceId"   : instance_id,
                    "PreviousState": r[0],
                    "NewState"     : r[1]
                })
        if len(transitions):
            R(None, self.targetgroup_transitions, Transitions=transitions)
        return transitions

    def targetgroup_transitions(self, Transitions=None):
        for t in Transitions:
            log.info("Target '%s' health: %s -> %s" % (t["InstanceId"], t["PreviousState"], t["NewState"]))
        return {}

    ###############################################
    #### RECONCILIATION ###########################
    ###############################################

    def get_drained_targets(self):
        """ Draining targets ready to leave: no more in-flight request or deregistration delay expired.
        """
        now   = self.context["now"]
        delay = self.settings.deregistration_delay
        return [t for t in self.get_targets(state="draining")
                if t["_InFlight"] == 0 or (now - t["_DrainingStartDate"]).total_seconds() >= delay]

    @xray_recorder.capture()
    def manage_targetgroup(self):
        """
        Register new fleet instances, start draining of instances leaving the fleet and probe targets.
        """
        # Forget targets whose instance has disappeared
        for instance_id in self.get_registered_instance_ids():
            instance = self.ec2.get_instance_by_id(instance_id)
            if instance is None or instance["State"]["Name"] not in ["pending", "running"]:
                log.info("Instance '%s' is gone: removing it from the targetgroup." % instance_id)
                self.remove_target(instance_id)

        instance_ids_to_add = []
        for instance in self.ec2.get_instances(State="pending,running", ScalingState="-draining"):
            if self.is_instance_registered(instance["InstanceId"]) is None:
                instance_ids_to_add.append({"Id": instance["InstanceId"]})
        if len(instance_ids_to_add):
            log.debug("Registering instance(s) in TargetGroup: %s" % instance_ids_to_add)
            R(None, self.register_targets, Targets=instance_ids_to_add)

        instance_ids_to_drain = []
        for instance in self.ec2.get_instances(ScalingState="draining"):
            if self.is_instance_registered(instance["InstanceId"], fail_if_draining=True) is not None:
                instance_ids_to_drain.append({"Id": instance["InstanceId"]})
        if len(instance_ids_to_drain):
            log.debug("Deregistering instance(s) from TargetGroup: %s" % instance_ids_to_drain)
            R(None, self.deregister_targets, Targets=instance_ids_to_drain)

        self.run_health_checks()
        log.debug(Dbg.pprint(self.describe_target_health()))
