from .engine import EvaluationContext, Rule, RuleSet, apply_rules, evaluate
from .builtin import BUILTIN_RULES, default_rule_set
from .frameworks import ControlMapping, build_control_mapping

__all__ = [
    "EvaluationContext",
    "Rule",
    "RuleSet",
    "evaluate",
    "apply_rules",
    "BUILTIN_RULES",
    "default_rule_set",
    "ControlMapping",
    "build_control_mapping",
]
