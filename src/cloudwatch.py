""" cloudwatch.py

License: MIT

Metrics and alarm of the web stack.

The module manages:
    * An in-process metric store fed by the router (request and 5XX counts) and by utilization readers,
    * The 5XX alarm: a periodic evaluator over fixed, epoch aligned periods whose state value
    (INSUFFICIENT_DATA, OK or ALARM) is persisted in the state store,
    * The fleet CPU utilization reading (in-process stream or AWS/EC2 CPUUtilization from CloudWatch),
    * Publication of the control plane metrics to CloudWatch (optional).
"""
import re
import math
import threading
from datetime import timedelta
from collections import defaultdict

import misc
import config as Cfg
import debug as Dbg
from notify import record_call as R

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

ALARM_STATES = ["INSUFFICIENT_DATA", "OK", "ALARM"]

COMPARATORS = {
    "GreaterThanOrEqualToThreshold": lambda value, threshold: value >= threshold,
    "GreaterThanThreshold"         : lambda value, threshold: value >  threshold,
    "LessThanThreshold"            : lambda value, threshold: value <  threshold,
    "LessThanOrEqualToThreshold"   : lambda value, threshold: value <= threshold
}


class MetricStore:
    """ Thread-safe store of raw metric datapoints (timestamp, value) indexed by metric name.
    """
    def __init__(self):
        self.lock       = threading.Lock()
        self.datapoints = defaultdict(list)

    def put(self, name, value, date):
        with self.lock:
            self.datapoints[name].append((date, float(value)))

    def get_values(self, names, start, end):
        """ Return the values of all 'names' metrics with start <= timestamp < end.
        """
        if isinstance(names, str): names = [names]
        with self.lock:
            return [v for name in names for d, v in self.datapoints.get(name, []) if start <= d < end]

    def get_statistic(self, names, start, end, statistic="Sum"):
        """ Return the statistic ('Sum', 'Average', 'Maximum', 'SampleCount') or None when no datapoint exists.
        """
        values = self.get_values(names, start, end)
        if len(values) == 0:
            return None
        if statistic == "Sum":
            return sum(values)
        if statistic == "Average":
            return sum(values) / len(values)
        if statistic == "Maximum":
            return max(values)
        if statistic == "SampleCount":
            return float(len(values))
        raise ValueError("Unknown statistic '%s'!" % statistic)

    def purge(self, older_than):
        with self.lock:
            for name in list(self.datapoints.keys()):
                self.datapoints[name] = [(d, v) for d, v in self.datapoints[name] if d >= older_than]


class CloudWatchMetricSource:
    """ Read the average AWS/EC2 CPUUtilization of fleet instances from CloudWatch.
    """
    def __init__(self, context):
        self.context = context
        misc.initialize_clients(["cloudwatch"], context)

    @staticmethod
    def _format_query(query, metric_id, metric):
        uniq_id                     = "id%s" % misc.sha256(metric_id)[:16]
        query["IdMapping"][uniq_id] = metric_id
        q = {
                "Id" : uniq_id,
                "MetricStat" : {
                        "Metric" : {
                                "MetricName" : metric["MetricName"],
                                "Namespace"  : metric["Namespace"],
                                "Dimensions" : metric["Dimensions"]
                            },
                        "Period" : metric["Period"],
                        "Stat"   : metric["Statistic"]
                    },
                "ReturnData": True
            }
        query["Queries"].append(q)

    def get_average_utilization(self, instance_ids, start, end):
        client = self.context["cloudwatch.client"]
        query  = {"IdMapping": {}, "Queries": []}
        for instance_id in instance_ids:
            self._format_query(query, instance_id, {
                "MetricName": "CPUUtilization",
                "Namespace" : "AWS/EC2",
                "Dimensions": [{"Name": "InstanceId", "Value": instance_id}],
                "Period"    : 60,
                "Statistic" : "Average"
            })

        latest  = {}
        queries = query["Queries"]
        while len(queries) > 0:
            q        = queries[:500]
            queries  = queries[500:]
            response = None
            while response is None or "NextToken" in response:
                args = {
                        "MetricDataQueries" : q,
                        "StartTime" : start,
                        "EndTime" : end
                  }
                if response is not None: args["NextToken"] = response["NextToken"]
                response = client.get_metric_data(**args)
                for r in response["MetricDataResults"]:
                    if len(r["Values"]) == 0:
                        continue
                    # Results are sorted by descending timestamp
                    latest[query["IdMapping"][r["Id"]]] = r["Values"][0]
        if len(latest) == 0:
            log.info("No CPUUtilization datapoint returned for instances %s" % instance_ids)
            return None
        return sum(latest.values()) / len(latest)


class CloudWatch:
    @xray_recorder.capture(name="Cloudwatch.__init__")
    def __init__(self, context, o_state, metric_store=None, metric_source=None):
        self.context      = context
        self.o_state      = o_state
        self.store        = metric_store if metric_store is not None else MetricStore()
        self.metrics      = []
        self.last_sent    = None
        Cfg.register({
                    "cloudwatch.default_ttl": "days=1",
                    "cloudwatch.alarm.5xx.name": "HTTP5XXAlarm",
                    "cloudwatch.metrics.namespace": "WebFleet",
                    "cloudwatch.metrics.publish,Stable": {
                        "DefaultValue": "0",
                        "Format"      : "Bool",
                        "Description" : """Publish the control plane metrics (fleet size, target health, request and 5XX counts) to CloudWatch.

Metrics are sent in the namespace [`cloudwatch.metrics.namespace`](#cloudwatchmetricsnamespace) with a 'GroupName' dimension.
                        """
                    },
                    "cloudwatch.metrics.excluded": "",
                    "cloudwatch.metrics.max_update_per_batch": "20",
                    "cloudwatch.metrics.retention": "hours=1",
                    "cloudwatch.alarm.max_periods_per_evaluation": 100,
                    "cloudwatch.cpu.source,Stable": {
                        "DefaultValue": "internal",
                        "Format"      : "String",
                        "Description" : """Source of the fleet CPU utilization driving the scaling policy.

* 'internal': CPUUtilization datapoints pushed into the control plane (daemon metric endpoint),
* 'cloudwatch': AWS/EC2 CPUUtilization of the fleet instances read with CloudWatch.GetMetricData().
                        """
                    },
                    "cloudwatch.cpu.sample_window": "minutes=1",
                    "cloudwatch.cpu.data_period": "minutes=10",
        }, ignore_double_definition=True)
        self.metric_source = metric_source
        if self.metric_source is None and Cfg.get("cloudwatch.cpu.source") == "cloudwatch":
            self.metric_source = CloudWatchMetricSource(context)
        self.register_metric([
                { "MetricName": "FleetSize",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "DesiredCapacity",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "HealthyTargetCount",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "UnHealthyTargetCount",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "CPUUtilization",
                  "Unit": "Percent",
                  "StorageResolution": 60 },
                { "MetricName": "RequestCount",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "HTTPCode_ELB_5XX_Count",
                  "Unit": "Count",
                  "StorageResolution": 60 },
                { "MetricName": "HTTPCode_Target_5XX_Count",
                  "Unit": "Count",
                  "StorageResolution": 60 },
            ])

    @property
    def settings(self):
        return self.context["settings"]

    def get_prerequisites(self):
        settings  = self.settings
        retention = max(Cfg.get_duration_secs("cloudwatch.metrics.retention"),
                settings.alarm_period * (settings.alarm_evaluation_periods + 1))
        self.store.purge(self.context["now"] - timedelta(seconds=retention))

    ###############################################
    #### METRIC STREAM ############################
    ###############################################

    def put_metric(self, name, value, date=None):
        self.store.put(name, value, date if date is not None else self.context["now"])

    def get_fleet_utilization(self, instance_ids):
        """ Return the average CPU utilization of the fleet over the last sample window or None without data.
        """
        now = self.context["now"]
        if self.metric_source is not None:
            start = now - timedelta(seconds=Cfg.get_duration_secs("cloudwatch.cpu.data_period"))
            if len(instance_ids) == 0:
                return None
            return self.metric_source.get_average_utilization(instance_ids, start, now)
        start = now - timedelta(seconds=Cfg.get_duration_secs("cloudwatch.cpu.sample_window"))
        return self.store.get_statistic("CPUUtilization", start, now + timedelta(seconds=1), statistic="Average")

    ###############################################
    #### ALARM EVALUATION #########################
    ###############################################

    def _alarm_key(self, suffix):
        return "cloudwatch.alarm.%s.%s" % (Cfg.get("cloudwatch.alarm.5xx.name"), suffix)

    def get_alarm_state(self):
        return self.o_state.get_state(self._alarm_key("state"), default="INSUFFICIENT_DATA")

    def get_period_bounds(self, period_index):
        period = int(self.settings.alarm_period)
        return misc.seconds2utc(period_index * period), misc.seconds2utc((period_index + 1) * period)

    def get_period_value(self, period_index):
        start, end = self.get_period_bounds(period_index)
        return self.store.get_statistic(list(self.settings.alarm_metric_names), start, end, statistic="Sum")

    def compute_alarm_state(self, values, current_state):
        """ Compute the alarm state from the last 'evaluation_periods' period values (None = missing datapoint).

        :return A tuple (state, reason)
        """
        settings  = self.settings
        compare   = COMPARATORS[settings.alarm_comparison_operator]
        treat     = settings.alarm_treat_missing_data
        breaching = 0
        present   = 0
        for v in values:
            if v is None:
                if treat == "breaching":
                    breaching += 1
                    present   += 1
                elif treat == "notBreaching":
                    present   += 1
                continue
            present += 1
            if compare(v, settings.alarm_threshold):
                breaching += 1

        if present == 0:
            if treat == "ignore":
                return current_state, "No datapoint (missing data ignored)"
            return "INSUFFICIENT_DATA", "No datapoint for the last %d period(s)" % len(values)
        reason = "%d out of the last %d datapoint(s) %s were breaching the threshold (%s %s)" % (breaching, len(values),
                values, settings.alarm_comparison_operator, settings.alarm_threshold)
        if breaching >= settings.alarm_evaluation_periods:
            return "ALARM", reason
        return "OK", reason

    @xray_recorder.capture()
    def evaluate_alarms(self):
        """ Evaluate every period completed since the last evaluation, in order.

        :return The current alarm state value
        """
        settings       = self.settings
        period         = int(settings.alarm_period)
        now_secs       = misc.seconds_from_epoch_utc(now=self.context["now"])
        last_completed = now_secs // period - 1
        last_evaluated = self.o_state.get_state_int(self._alarm_key("last_evaluated_period"), default=None)
        if last_evaluated is None or last_evaluated > last_completed:
            last_evaluated = last_completed - 1
        first = max(last_evaluated + 1, last_completed - Cfg.get_int("cloudwatch.alarm.max_periods_per_evaluation") + 1)

        history = self.o_state.get_state_json(self._alarm_key("history"), default=[])
        state   = self.get_alarm_state()
        ttl     = Cfg.get_duration_secs("cloudwatch.default_ttl")
        for period_index in range(first, last_completed + 1):
            history.append([period_index, self.get_period_value(period_index)])
            history   = history[-settings.alarm_evaluation_periods:]
            new_state, reason = self.compute_alarm_state([v for p, v in history], state)
            if new_state != state:
                R(None, self.alarm_state_transition, AlarmName=Cfg.get("cloudwatch.alarm.5xx.name"),
                        OldStateValue=state, NewStateValue=new_state, StateReason=reason,
                        PeriodStart=self.get_period_bounds(period_index)[0])
                state = new_state
                self.o_state.set_state(self._alarm_key("state"), state, TTL=0)
                self.o_state.set_state(self._alarm_key("state_date"), self.context["now"], TTL=0)
            self.o_state.set_state(self._alarm_key("state_reason"), reason, TTL=ttl)

        if first <= last_completed:
            self.o_state.set_state(self._alarm_key("last_evaluated_period"), last_completed, TTL=ttl)
            self.o_state.set_state_json(self._alarm_key("history"), history, TTL=ttl)
        return state

    def alarm_state_transition(self, AlarmName=None, OldStateValue=None, NewStateValue=None, StateReason=None,
            PeriodStart=None):
        level = log.WARNING if NewStateValue == "ALARM" else log.NOTICE
        log.log(level, "Alarm '%s' state %s -> %s: %s" % (AlarmName, OldStateValue, NewStateValue, StateReason))
        return {"AlarmName": AlarmName, "StateValue": NewStateValue}

    def describe_alarms(self):
        settings = self.settings
        return [{
            "AlarmName"         : Cfg.get("cloudwatch.alarm.5xx.name"),
            "Metrics"           : list(settings.alarm_metric_names),
            "Statistic"         : "Sum",
            "Period"            : int(settings.alarm_period),
            "EvaluationPeriods" : settings.alarm_evaluation_periods,
            "Threshold"         : settings.alarm_threshold,
            "ComparisonOperator": settings.alarm_comparison_operator,
            "TreatMissingData"  : settings.alarm_treat_missing_data,
            "StateValue"        : self.get_alarm_state(),
            "StateReason"       : self.o_state.get_state(self._alarm_key("state_reason"), default=""),
            "StateUpdatedTimestamp": self.o_state.get_state_date(self._alarm_key("state_date"))
        }]

    ###############################################
    #### METRIC PUBLICATION #######################
    ###############################################

    def register_metric(self, spec):
        self.metrics.extend(spec)

    def set_metric(self, name, value, dimensions=None):
        m = next(filter(lambda m: m["MetricName"] == name, self.metrics), None)
        if m is None:
            raise Exception("Unknown metric set '%s'" % name)

        m["Value"]      = float(value) if value is not None else None
        m["Timestamp"]  = self.context["now"]
        m["Dimensions"] = [{
                "Name": "GroupName",
                "Value": self.context["GroupName"]
                }]
        if dimensions is not None:
            m["Dimensions"].extend(dimensions)
        log.debug("Metric[%s] = %s (Dimensions=%s)" % (name, value, dimensions))

    def compute_request_metrics(self):
        """ Sum the request and 5XX counts received since the previous publication.
        """
        now   = self.context["now"]
        start = self.last_sent if self.last_sent is not None else now - timedelta(seconds=60)
        for name in ["RequestCount", "HTTPCode_ELB_5XX_Count", "HTTPCode_Target_5XX_Count"]:
            v = self.store.get_statistic(name, start, now)
            self.set_metric(name, v if v is not None else 0)
        self.last_sent = now

    @xray_recorder.capture()
    def send_metrics(self):
        if Cfg.get_int("cloudwatch.metrics.publish") == 0:
            return 0
        misc.initialize_clients(["cloudwatch"], self.context)
        self.compute_request_metrics()
        client    = self.context["cloudwatch.client"]
        namespace = Cfg.get("cloudwatch.metrics.namespace")
        batch     = Cfg.get_int("cloudwatch.metrics.max_update_per_batch")

        excluded_metrics = Cfg.get_list("cloudwatch.metrics.excluded", default=[])
        metrics = []
        for m in self.metrics:
            metric_name   = m["MetricName"]
            match_pattern = next(filter(lambda em: re.match(em, metric_name), excluded_metrics), None)
            if match_pattern is not None:
                log.debug("Metric '%s' excluded by keyword '%s' in 'cloudwatch.metrics.excluded'!" % (metric_name, match_pattern))
                continue
            if m.get("Value") is None or (isinstance(m["Value"], float) and math.isnan(m["Value"])):
                log.debug("Metric '%s' has no value" % metric_name)
                continue
            metrics.append(m)

        log.log(log.NOTICE, "Sending %d metrics to Cloudwatch..." % len(metrics))
        sent = 0
        while len(metrics):
            try:
                client.put_metric_data(Namespace=namespace, MetricData=metrics[:batch])
                sent += len(metrics[:batch])
            except Exception:
                log.exception("Failed to send metrics to CloudWatch : %s" % Dbg.pprint(metrics[:batch]))
            metrics = metrics[batch:]
        return sent
