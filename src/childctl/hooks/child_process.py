"""Bootstrap hook: wire this child interpreter into its manager."""

from childctl.child import bootstrap_child

bootstrap_child()
