""" fleet_schedule.py

License: MIT

This module is responsible to take all scheduling decisions of the fleet instances.

As a top level module, it has dependencies with almost all lower level modules (ec2.py, targetgroup.py, cloudwatch.py).

The module manages:
    * Target tracking scaling of the fleet desired capacity (CPU utilization vs target),
    * Convergence of the fleet size toward the desired capacity (launch or drain),
    * Replacement of instances failing their health checks,
    * Termination of drained instances,
    * Publication of the fleet metrics.

schedule_instances():
    - Module entrypoint that dispatches sequentially works to the remaining module code.
"""
import math
from datetime import timedelta
from collections import Counter

import misc
import config as Cfg
from ec2 import ProvisioningError
from notify import record_call as R

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)


class FleetSchedule:
    @xray_recorder.capture(name="FleetSchedule.__init__")
    def __init__(self, context, ec2, targetgroup, cloudwatch):
        self.context     = context
        self.ec2         = ec2
        self.targetgroup = targetgroup
        self.cloudwatch  = cloudwatch
        self.utilization = None
        Cfg.register({
            "fleet.schedule.disable,Stable": {
                "DefaultValue": "0",
                "Format"      : "Bool",
                "Description" : """Disable all scaling decisions.

When set, the desired capacity is frozen; unhealthy instances are still replaced and drained instances terminated.
                """
            },
        }, ignore_double_definition=True)

    @property
    def settings(self):
        return self.context["settings"]

    def get_prerequisites(self):
        pass

    def set_state(self, key, value):
        self.ec2.set_state(key, value)

    @xray_recorder.capture()
    def schedule_instances(self):
        """
        This is the function that manages all decisions related to scaling
        """
        self.terminate_drained_instances()
        self.replace_unhealthy_instances()
        if not Cfg.get_int("fleet.schedule.disable"):
            self.scale_in_out()
        self.converge_fleet()
        self.prepare_metrics()

    ##########################################################
    #### TARGET TRACKING SCALING #############################
    ##########################################################

    def get_scale_start_date(self, direction):
        return self.ec2.get_state_date("fleet.schedule.%s.start_date" % direction)

    def is_scale_transition_too_early(self, to_direction):
        """ Return 0 if a scaling action in the specified direction is allowed. Return the number of seconds to wait otherwise.

        A scaleout waits for 'scaleout_cooldown' after the previous scaleout. A scalein waits for 'scalein_cooldown'
        after any previous scaling action so capacity just added is not removed straight away.

        :param to_direction: ["scalein", "scaleout"]
        """
        now        = self.context["now"]
        directions = ["scaleout"] if to_direction == "scaleout" else ["scaleout", "scalein"]
        cooldown   = self.settings.scaleout_cooldown if to_direction == "scaleout" else self.settings.scalein_cooldown
        seconds    = 0
        for d in directions:
            last_scale_action_date = self.ec2.get_state_date("fleet.schedule.%s.last_action_date" % d)
            if last_scale_action_date is None:
                continue
            time_to_wait = timedelta(seconds=cooldown) - (now - last_scale_action_date)
            seconds      = max(seconds, time_to_wait.total_seconds())
        return seconds

    def compute_desired_capacity(self, current, utilization):
        """ Target tracking: the capacity that brings the average utilization back to target.
        """
        return int(math.ceil(current * utilization / self.settings.target_utilization))

    def get_breach_direction(self, utilization):
        settings = self.settings
        if utilization > settings.target_utilization:
            return "scaleout"
        if utilization < settings.target_utilization * settings.scalein_threshold_ratio:
            return "scalein"
        return None

    @xray_recorder.capture()
    def scale_in_out(self):
        now         = self.context["now"]
        settings    = self.settings
        desired     = self.ec2.get_desired_capacity()
        instance_ids = self.ec2.get_instance_ids(self.ec2.get_active_instances())
        utilization = self.cloudwatch.get_fleet_utilization(instance_ids)
        self.utilization = utilization
        if utilization is None:
            log.info("No utilization datapoint available: no scaling decision.")
            self.set_state("fleet.schedule.scaleout.start_date", "")
            self.set_state("fleet.schedule.scalein.start_date", "")
            return

        direction = self.get_breach_direction(utilization)
        opposite  = {"scaleout": "scalein", "scalein": "scaleout", None: None}[direction]
        if opposite is not None:
            self.set_state("fleet.schedule.%s.start_date" % opposite, "")
        if direction is None:
            log.debug("Utilization %.1f%% within the target band: no scaling." % utilization)
            self.set_state("fleet.schedule.scaleout.start_date", "")
            self.set_state("fleet.schedule.scalein.start_date", "")
            return

        start_date = self.get_scale_start_date(direction)
        if start_date is None:
            # Remember when the breach started
            start_date = now
            self.set_state("fleet.schedule.%s.start_date" % direction, str(start_date))

        breach_duration = settings.scaleout_breach_duration if direction == "scaleout" else settings.scalein_breach_duration
        breach_seconds  = (now - start_date).total_seconds()
        if breach_seconds < breach_duration:
            log.info("Utilization %.1f%% in %s breach since %d seconds (%d seconds required)." %
                    (utilization, direction, breach_seconds, breach_duration))
            return

        wait = self.is_scale_transition_too_early(direction)
        if wait > 0:
            log.info("%s cooldown: %d seconds to wait." % (direction, wait))
            return

        if direction == "scaleout":
            new_desired = self.ec2.clamp_capacity(max(desired + 1, self.compute_desired_capacity(desired, utilization)))
        else:
            if len(self.targetgroup.get_targets(state="initial")):
                log.info("Scalein deferred: some targets are still in 'initial' state.")
                return
            new_desired = self.ec2.clamp_capacity(min(desired - 1, self.compute_desired_capacity(desired, utilization)))

        if new_desired == desired:
            log.debug("Desired capacity already at bound (%d)." % desired)
            return
        R(None, self.scale_fleet, Direction=direction, FromCapacity=desired, ToCapacity=new_desired,
                Utilization=utilization)
        self.set_state("fleet.schedule.%s.last_action_date" % direction, now)

    def scale_fleet(self, Direction=None, FromCapacity=None, ToCapacity=None, Utilization=None):
        log.log(log.NOTICE, "%s: desired capacity %d -> %d (utilization=%.1f%%, target=%.1f%%)" %
                (Direction, FromCapacity, ToCapacity, Utilization, self.settings.target_utilization))
        return self.ec2.set_desired_capacity(ToCapacity)

    ##########################################################
    #### FLEET CONVERGENCE ###################################
    ##########################################################

    def scalein_sort_instances(self, candidates):
        """ Return candidates sorted in the order they should leave the fleet.

        Order: instances not yet healthy ('initial' or 'unhealthy') first, then instances of the most crowded AZ,
        then oldest launch time, then lowest instance id.
        """
        az_counts = Counter([i["Placement"]["AvailabilityZone"] for i in candidates])
        now       = self.context["now"]
        def _key(instance):
            target = self.targetgroup.get_target(instance["InstanceId"])
            state  = target["TargetHealth"]["State"] if target is not None else "initial"
            return (0 if state in ["initial", "unhealthy"] else 1,
                    -az_counts[instance["Placement"]["AvailabilityZone"]],
                    misc.str2utc(instance.get("LaunchTime"), default=now),
                    instance["InstanceId"])
        return sorted(candidates, key=_key)

    def select_scalein_victims(self, candidates, count):
        remaining = list(candidates)
        victims   = []
        for _ in range(min(count, len(remaining))):
            victim = self.scalein_sort_instances(remaining)[0]
            remaining.remove(victim)
            victims.append(victim)
        return victims

    def drain_instance(self, InstanceId=None):
        self.ec2.set_scaling_state(InstanceId, "draining")
        self.targetgroup.deregister_targets(Targets=[{"Id": InstanceId}])
        return {"InstanceId": InstanceId}

    @xray_recorder.capture()
    def converge_fleet(self):
        active  = self.ec2.get_active_instances()
        desired = self.ec2.get_desired_capacity()
        if len(active) < desired:
            log.info("Fleet size %d < desired capacity %d: launching %d instance(s)..." %
                    (len(active), desired, desired - len(active)))
            for _ in range(desired - len(active)):
                try:
                    self.ec2.launch_instance()
                except ProvisioningError as e:
                    # Retried at next pass
                    log.error("Failed to launch instance: %s" % e)
                    break
        elif len(active) > desired:
            victims = self.select_scalein_victims(active, len(active) - desired)
            log.info("Fleet size %d > desired capacity %d: draining %s..." %
                    (len(active), desired, self.ec2.get_instance_ids(victims)))
            for victim in victims:
                R(None, self.drain_instance, InstanceId=victim["InstanceId"])

    ##########################################################
    #### REPLACEMENT AND TERMINATION #########################
    ##########################################################

    def replace_instance(self, InstanceId=None, Reason=None):
        self.ec2.terminate_instance(InstanceId)
        self.targetgroup.remove_target(InstanceId)
        return {"InstanceId": InstanceId, "Reason": Reason}

    @xray_recorder.capture()
    def replace_unhealthy_instances(self):
        grace = self.settings.replacement_grace_period
        for target in self.targetgroup.get_targets(state="unhealthy"):
            instance_id = target["Target"]["Id"]
            instance    = self.ec2.get_instance_by_id(instance_id)
            if instance is None or instance["State"]["Name"] not in ["pending", "running"]:
                continue
            age = self.ec2.get_instance_age(instance).total_seconds()
            if age < grace:
                log.info("Unhealthy instance '%s' still in its replacement grace period (%d/%d seconds)." %
                        (instance_id, age, grace))
                continue
            try:
                R(None, self.replace_instance, InstanceId=instance_id, Reason=target["TargetHealth"]["Reason"])
            except ProvisioningError as e:
                log.error("Failed to replace unhealthy instance '%s': %s" % (instance_id, e))

    @xray_recorder.capture()
    def terminate_drained_instances(self):
        for target in self.targetgroup.get_drained_targets():
            instance_id = target["Target"]["Id"]
            log.info("Target '%s' drained (in-flight=%d): terminating instance." % (instance_id, target["_InFlight"]))
            try:
                self.ec2.terminate_instance(instance_id)
            except ProvisioningError as e:
                log.error("Failed to terminate drained instance '%s': %s" % (instance_id, e))
                continue
            self.targetgroup.remove_target(instance_id)

        # Draining instances that never made it to the targetgroup have nothing to drain
        for instance in self.ec2.get_instances(State="pending,running", ScalingState="draining"):
            if self.targetgroup.is_instance_registered(instance["InstanceId"]) is None:
                try:
                    self.ec2.terminate_instance(instance["InstanceId"])
                except ProvisioningError as e:
                    log.error("Failed to terminate drained instance '%s': %s" % (instance["InstanceId"], e))

    ##########################################################
    #### METRICS #############################################
    ##########################################################

    def prepare_metrics(self):
        cw = self.cloudwatch
        cw.set_metric("FleetSize", self.ec2.get_fleet_size())
        cw.set_metric("DesiredCapacity", self.ec2.get_desired_capacity())
        cw.set_metric("HealthyTargetCount", len(self.targetgroup.get_targets(state="healthy")))
        cw.set_metric("UnHealthyTargetCount", len(self.targetgroup.get_targets(state="unhealthy")))
        cw.set_metric("CPUUtilization", self.utilization)
