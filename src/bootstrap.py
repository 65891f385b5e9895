""" bootstrap.py

License: MIT

Boot sequence of a fleet instance.

The same sequence exists in two forms:
    * render_user_data() produces the shell script handed to the instance at launch (run once by cloud-init),
    * run_bootstrap() executes it step by step from Python (instance side entrypoint of this module).

Steps: install packages -> query the instance identity -> render the status page -> start and enable the web server
and the log shipper. Any failure raises BootstrapError: the instance then never passes its health checks and stays
out of rotation until replaced.
"""
import sys
import json
import subprocess
import argparse

import requests
from jinja2 import Environment

import wflog
log = wflog.logger(__name__)

METADATA_URL   = "http://169.254.169.254"
STATUS_PAGE    = "/var/www/html/index.html"
PACKAGES       = ["jq", "httpd", "awslogs"]
SERVICES       = ["httpd", "awslogsd"]
STYLESHEET_URL = "https://cdn.jsdelivr.net/gh/kognise/water.css@latest/dist/dark.min.css"

_env = Environment(autoescape=True)

STATUS_PAGE_TEMPLATE = _env.from_string(
"""<html><head><link rel="stylesheet" href="{{ stylesheet }}"></head><body>
<h3>Hello from {{ host_name }} ({{ instance_id }}) in AZ {{ availability_zone }}.</h3>
<p>Instance Details:</p>
<p><code style="line-height: 1.8">{{ identity_document }}</code></p>
</body></html>
""")

USER_DATA_TEMPLATE = Environment(autoescape=False).from_string(
"""#!/bin/bash
{% for package in packages -%}
{% if loop.first %}yum update -y
{% endif %}yum install -y {{ package }}
{% endfor -%}
export host_name=$(curl {{ metadata_url }}/latest/meta-data/local-hostname)
export instance_id=$(curl {{ metadata_url }}/latest/meta-data/instance-id)
export identity_document=$(curl {{ metadata_url }}/latest/dynamic/instance-identity/document)
export az=$(echo $identity_document | jq -r .availabilityZone)
echo "<html><head><link rel=\\"stylesheet\\" href=\\"{{ stylesheet }}\\"></head><body><h3>Hello from $host_name ($instance_id) in AZ $az.</h3><p>Instance Details:</p><p><code style=\\"line-height: 1.8\\">$identity_document</code></p></body></html>" > {{ status_page }}
{% for service in services -%}
systemctl start {{ service }}
chkconfig {{ service }} on
{% endfor -%}
""")


class BootstrapError(Exception):
    pass


def render_user_data(packages=None, services=None, metadata_url=METADATA_URL, status_page=STATUS_PAGE):
    return USER_DATA_TEMPLATE.render(
            packages=packages if packages is not None else PACKAGES,
            services=services if services is not None else SERVICES,
            metadata_url=metadata_url,
            status_page=status_page,
            stylesheet=STYLESHEET_URL)


def fetch_identity(session=None, metadata_url=METADATA_URL, timeout=2):
    """ Query the instance metadata service for the identity of the running instance.

    An IMDSv2 session token is requested first; on failure, the requests are sent without token (IMDSv1).

    :return A dict with 'host_name', 'instance_id', 'availability_zone' and 'identity_document' (raw JSON string)
    """
    if session is None: session = requests.Session()
    headers = {}
    try:
        r = session.put("%s/latest/api/token" % metadata_url,
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "21600"}, timeout=timeout)
        if r.status_code == 200:
            headers["X-aws-ec2-metadata-token"] = r.text
    except requests.RequestException as e:
        log.debug("IMDSv2 token request failed, falling back to IMDSv1: %s" % e)

    def _get(path):
        try:
            r = session.get("%s/%s" % (metadata_url, path), headers=headers, timeout=timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise BootstrapError("Failed to query instance metadata '%s' : %s" % (path, e))
        return r.text

    host_name         = _get("latest/meta-data/local-hostname")
    instance_id       = _get("latest/meta-data/instance-id")
    identity_document = _get("latest/dynamic/instance-identity/document")
    try:
        availability_zone = json.loads(identity_document)["availabilityZone"]
    except (ValueError, KeyError) as e:
        raise BootstrapError("Malformed instance identity document : %s" % e)
    return {
        "host_name"        : host_name,
        "instance_id"      : instance_id,
        "availability_zone": availability_zone,
        "identity_document": identity_document
    }


def render_status_page(identity):
    return STATUS_PAGE_TEMPLATE.render(stylesheet=STYLESHEET_URL, **identity)


def run_command(cmd):
    log.info("Running '%s'..." % " ".join(cmd))
    try:
        subprocess.run(cmd, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise BootstrapError("Command '%s' failed : %s" % (" ".join(cmd), e))


def run_bootstrap(runner=run_command, identity_fetcher=fetch_identity, status_page=STATUS_PAGE):
    """ Execute the boot sequence. Idempotent: running it again re-renders the page and keeps services enabled.

    :param runner:           Callable executing a command (list of strings), raising BootstrapError on failure
    :param identity_fetcher: Callable returning the instance identity dict (see fetch_identity())
    :param status_page:      Path of the rendered status page
    :return The identity dict
    """
    runner(["yum", "update", "-y"])
    for package in PACKAGES:
        runner(["yum", "install", "-y", package])

    identity = identity_fetcher()
    page     = render_status_page(identity)
    try:
        with open(status_page, "w") as f:
            f.write(page)
    except OSError as e:
        raise BootstrapError("Failed to write status page '%s' : %s" % (status_page, e))

    for service in SERVICES:
        runner(["systemctl", "start", service])
        runner(["systemctl", "enable", service])
    log.info("Instance %s (%s) bootstrapped in AZ %s." %
            (identity["instance_id"], identity["host_name"], identity["availability_zone"]))
    return identity


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="WebFleet instance bootstrap")
    parser.add_argument('--user-data', help="Print the user data script and exit", action="store_true")
    parser.add_argument('--status-page', help="Status page path", type=str, default=STATUS_PAGE)
    args = parser.parse_args()
    if args.user_data:
        print(render_user_data(status_page=args.status_page))
        sys.exit(0)
    try:
        run_bootstrap(status_page=args.status_page)
    except BootstrapError as e:
        log.error("Bootstrap failed: %s" % e)
        sys.exit(1)
