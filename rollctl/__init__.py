"""rollctl: single-host container rollout controller.

Replaces the manual "pull, compose up, reload nginx" routine with a small
controller that:
 - pulls the release image
 - starts the new container next to the running one
 - health-gates it before traffic is switched
 - updates the reverse proxy upstream, then retires the old container
 - rolls back and leaves the old container serving when anything fails
"""

__version__ = "0.3.0"
