"""
Sparebox Host Agent
===================

The daemon that runs on a contributed host machine.

What it does:
  1. Detect how agents can be isolated here (docker/podman, or openclaw profiles)
  2. Load persisted agents and reconcile them with what is actually running
  3. Send a heartbeat (host metrics + agent statuses) to the platform
  4. Apply lifecycle commands returned in the heartbeat response
     (deploy, start, stop, restart, undeploy, update_config)
  5. Queue command acks and chat replies for the next heartbeat
  6. Back off exponentially when the platform is unreachable

Security model:
  - Container agents run with a read-only rootfs, all capabilities dropped,
    no-new-privileges, memory/CPU limits and a single published port
  - The only host paths an agent sees are its own workspace/ and state/
  - Agent env vars come from the platform's deploy config, never from the host
  - This daemon never executes arbitrary code from the platform — it only
    passes an image + env vars to the container engine or workload binary

Requirements:
  pip install requests psutil

Usage:
  python -m host_agent --verify
  SPAREBOX_API_KEY=sbx_host_... SPAREBOX_HOST_ID=<uuid> python -m host_agent
"""

__version__ = "0.4.0"
