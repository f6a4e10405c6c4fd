class PlanError(Exception):
    """Base class for failures raised while planning the network."""


class ConfigurationError(PlanError):
    """Invalid or missing inputs: CIDRs, AZ counts, tiers, flows, settings or payload files."""


class RuleConflictError(PlanError):
    """Two rules collide on a number, a band overflows, or a forward path has no return path."""
