"""
Token cost heuristics for Bot Builder.
Estimates what a generated bot costs the user by scanning its source line
by line. Pure functions, no I/O.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Dict

TOKEN_COSTS: Dict[str, int] = {
    "base": 50,
    "lines_of_code": 2,
    "nested_levels": 5,
    "functions": 8,
    "classes": 15,
    "db_operations": 10,
    "api_endpoints": 20,
    "imports": 3,
    "comments": 1,
    "error_handling": 5,
    "optimizations": 10,
    "security": 15,
}

ENHANCED_MULTIPLIER = 2.5
CHARS_PER_TOKEN = 4

_ARROW_BLOCK_RE = re.compile(r"=>\s*{")
_DB_CALLS = (".query(", ".findOne(", ".find(", ".update(", ".delete(")
_API_CALLS = (".get(", ".post(", ".put(", ".delete(", "fetch(")
_SECURITY_WORDS = (".authenticate", ".authorize", "verify", "validate")


@dataclass
class TokenCalculation:
    total_cost: int
    breakdown: Dict[str, int] = field(default_factory=dict)
    is_enhanced_ai: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {"totalCost": self.total_cost, "breakdown": dict(self.breakdown),
                "isEnhancedAI": self.is_enhanced_ai}


def calculate_token_cost(code: str, is_enhanced_ai: bool = False) -> TokenCalculation:
    """
    Score a piece of bot code.

    Args:
        code: JavaScript source
        is_enhanced_ai: Apply the enhanced-model multiplier

    Returns:
        TokenCalculation: Total cost and the per-category breakdown
    """
    breakdown = {key: 0 for key in TOKEN_COSTS}
    breakdown["base"] = TOKEN_COSTS["base"]

    lines = code.split("\n")
    breakdown["lines_of_code"] = sum(1 for line in lines if line.strip()) * TOKEN_COSTS["lines_of_code"]

    nesting = 0
    max_nesting = 0
    for line in lines:
        line = line.strip()

        if line.startswith("import ") or line.startswith("require("):
            breakdown["imports"] += TOKEN_COSTS["imports"]
        if line.startswith("//") or line.startswith("/*"):
            breakdown["comments"] += TOKEN_COSTS["comments"]
        if "function" in line or _ARROW_BLOCK_RE.search(line):
            breakdown["functions"] += TOKEN_COSTS["functions"]
        if line.startswith("class "):
            breakdown["classes"] += TOKEN_COSTS["classes"]
        if any(call in line for call in _DB_CALLS):
            breakdown["db_operations"] += TOKEN_COSTS["db_operations"]
        if any(call in line for call in _API_CALLS):
            breakdown["api_endpoints"] += TOKEN_COSTS["api_endpoints"]
        if "try {" in line or "catch (" in line:
            breakdown["error_handling"] += TOKEN_COSTS["error_handling"]
        if any(word in line for word in _SECURITY_WORDS):
            breakdown["security"] += TOKEN_COSTS["security"]

        # at most one level per line
        if "{" in line:
            nesting += 1
            max_nesting = max(max_nesting, nesting)
        if "}" in line:
            nesting -= 1

    breakdown["nested_levels"] = max_nesting * TOKEN_COSTS["nested_levels"]

    total = sum(breakdown.values())
    if is_enhanced_ai:
        total = math.ceil(total * ENHANCED_MULTIPLIER)
    return TokenCalculation(total_cost=total, breakdown=breakdown, is_enhanced_ai=is_enhanced_ai)


def estimate_prompt_cost(text: str, is_enhanced_ai: bool = False) -> int:
    """Rough token estimate for a prompt, four characters per token."""
    multiplier = ENHANCED_MULTIPLIER if is_enhanced_ai else 1
    return math.ceil(len(text) / CHARS_PER_TOKEN * multiplier)
