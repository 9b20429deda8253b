#!/usr/bin/env python3
"""
Remediation Demo

This script walks through the guard rails OpsGuard puts around an automated
remediation: tier gating, host access, cooldown quota, verification and
escalation. Backends are plain functions, so nothing touches a real host.
"""

import sys
import time
from pathlib import Path

# Add src to path for running from examples directory
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from opsguard.alerting import ConsoleNotifier
from opsguard.models import Diagnostics, HostAccessMap, PlaybookDescriptor
from opsguard.policy import PolicyTable
from opsguard.remediation import Orchestrator, RemediationRequest

ACCESS_MAP = HostAccessMap.from_dict({
    "web-01": {"address": "10.0.0.5", "user": "deploy", "method": "sudo"},
    "nas": {"address": "10.0.0.9", "user": "admin", "method": "limited"},
})


def restart_container(ctx):
    return True, f"{ctx.access.wrap('docker restart ' + ctx.service)} on {ctx.access.target}"


def healthy(ctx):
    return True, "HTTP 200"


def hanging_probe(ctx):
    time.sleep(1)
    return True


def request(incident, kind, host="web-01", tier=2):
    return RemediationRequest(
        incident_id=incident,
        service="api",
        host_id=host,
        playbook=PlaybookDescriptor(name=f"demo-{kind}", min_tier=1, action_kind=kind),
        agent_tier=tier,
    )


def banner(title):
    print("=" * 70)
    print(title)
    print("=" * 70)


def demo_cooldown(orchestrator):
    """Two restarts fit in the window; the third is refused."""
    banner("DEMO 1: Restart cooldown")
    for incident in ("inc-1", "inc-2", "inc-3"):
        report = orchestrator.remediate(request(incident, "restart"), restart_container, healthy)
        print(f"{incident}: {report.outcome.value}")
    print()


def demo_limited_host(orchestrator):
    """Write actions never run on a limited host."""
    banner("DEMO 2: Redeploy on a limited host")
    report = orchestrator.remediate(
        request("inc-4", "redeploy", host="nas", tier=3), restart_container, healthy
    )
    print(report.summary())
    print()


def demo_verification_timeout(orchestrator):
    """A backend success is not enough; the probe has the final word."""
    banner("DEMO 3: Verification timeout")
    report = orchestrator.remediate(
        request("inc-5", "rotate_key"),
        restart_container,
        hanging_probe,
        diagnostics=Diagnostics(log_tail="vault: lease renewal pending"),
    )
    print(report.summary())
    print()


def demo_dry_run():
    """Dry runs report what would happen and consume no quota."""
    banner("DEMO 4: Dry run")
    orchestrator = Orchestrator(access_map=ACCESS_MAP, dry_run=True)
    try:
        report = orchestrator.remediate(request("inc-6", "restart"), restart_container, healthy)
        print(report.record.detail)
    finally:
        orchestrator.close()
    print()


def main():
    policies = PolicyTable.default().with_overrides({"rotate_key": {"verify_timeout": 0.2}})
    orchestrator = Orchestrator(
        access_map=ACCESS_MAP,
        policies=policies,
        notifiers=[ConsoleNotifier()],
    )
    try:
        demo_cooldown(orchestrator)
        demo_limited_host(orchestrator)
        demo_verification_timeout(orchestrator)
    finally:
        orchestrator.close()
    demo_dry_run()


if __name__ == "__main__":
    main()
