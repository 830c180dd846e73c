"""
Parsing utilities for MLSim.

This module provides the formula parser, the random-effect term parser,
cross-classification resolution, correlation assignment parsing and the
expansion of varying simulation arguments into conditions.
"""

import copy
import re
from itertools import product
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from ..core.specs import CrossClassificationFlags, FormulaSpec, RandomEffectTermSpec
from ..errors import (
    InvalidCorrelationSpecError,
    InvalidGenerationSpecError,
    MalformedFormulaError,
    MalformedTermError,
)

__all__ = [
    "parse_formula",
    "parse_random_term",
    "parse_randomeffect",
    "parse_crossclass",
    "parse_correlations",
    "expand_vary_arguments",
]

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"

# Fixed-effect expression: identifiers or numbers joined by formula operators
_FIXED_ATOM = rf"(?:{_IDENT}|\d+(?:\.\d*)?)"
_FIXED_EXPRESSION = re.compile(rf"\s*{_FIXED_ATOM}(?:\s*[-+:*/^]\s*{_FIXED_ATOM})*\s*")


def _split_top_level(text: str, sep: str = "+", error: Type[Exception] = MalformedFormulaError) -> List[str]:
    """Split *text* on *sep*, ignoring separators inside parentheses.

    Raises:
        error: If the parentheses in *text* are unbalanced.
    """
    parts = []
    current: List[str] = []
    depth = 0

    for char in text:
        if char == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise error(f"Unbalanced ')' in '{text.strip()}'")
        current.append(char)

    if depth > 0:
        raise error(f"Unterminated '(' in '{text.strip()}'")

    parts.append("".join(current).strip())
    return parts


def _closing_paren(term: str) -> int:
    """Index of the parenthesis closing the one that opens *term*."""
    depth = 0
    for i, char in enumerate(term):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _is_random_group(term: str) -> bool:
    """Whether a top-level term is a random-effect group.

    A term is a random-effect group when it opens with ``(`` and either
    contains ``|`` or is not a plain parenthesised fixed-effect expression
    such as ``(x1 + x2)`` or ``(x1 + x2)^2``. A group like ``(1 g1)`` is
    therefore still read as a (malformed) random-effect term.
    """
    if not term.startswith("("):
        return False
    if "|" in term:
        return True
    return _FIXED_EXPRESSION.fullmatch(term.replace("(", " ").replace(")", " ")) is None


def parse_formula(formula: str) -> FormulaSpec:
    """Parse a mixed-model formula into outcome, fixed and random parts.

    The right-hand side is split on ``+`` at parenthesis depth zero, so the
    ``+`` signs inside ``(1 + x | group)`` never split a term. Top-level
    parenthesised groups are random-effect terms, except plain fixed-effect
    expressions such as ``(x1 + x2)``; everything else is a fixed-effect
    term.

    Supported random-effect syntax:
    - ``(1|group)`` — random intercept
    - ``(1 + x|group)`` — random intercept and slope
    - ``(1 + x1 + x2|group)`` — random intercept and multiple slopes

    Args:
        formula: Formula string (e.g. ``"y ~ x1 + x2 + (1 + x3|g1) + (1|g2)"``).

    Returns:
        A :class:`FormulaSpec` whose random-effect terms keep their
        left-to-right source order.

    Raises:
        MalformedFormulaError: If ``~`` is missing or repeated, the outcome
            or right-hand side is empty, or parentheses are unbalanced.
    """
    if not isinstance(formula, str):
        raise MalformedFormulaError(f"Formula must be a string, got {type(formula).__name__}")

    if "~" not in formula:
        raise MalformedFormulaError(f"Formula '{formula}' has no '~' separating outcome and predictors")
    if formula.count("~") > 1:
        raise MalformedFormulaError(f"Formula '{formula}' contains more than one '~'")

    left_side, right_side = formula.split("~", 1)
    outcome = left_side.strip()
    if not outcome:
        raise MalformedFormulaError(f"Formula '{formula}' has no outcome variable")

    terms = [t for t in _split_top_level(right_side) if t]
    if not terms:
        raise MalformedFormulaError(f"Formula '{formula}' has an empty right-hand side")

    random_terms: List[str] = []
    fixed_terms: List[str] = []

    for term in terms:
        if _is_random_group(term):
            if _closing_paren(term) != len(term) - 1:
                raise MalformedFormulaError(f"Unexpected text after random-effect group in '{term}'")
            random_terms.append(term)
        else:
            fixed_terms.append(term)

    fixed_formula = "~ " + (" + ".join(fixed_terms) if fixed_terms else "1")

    return FormulaSpec(
        outcome_name=outcome,
        fixed_formula=fixed_formula,
        random_effect_terms=random_terms,
        fixed_terms=fixed_terms,
    )


def parse_random_term(term: str) -> RandomEffectTermSpec:
    """Parse a single ``(effects | group)`` term.

    Raises:
        MalformedTermError: If the term does not contain exactly one ``|``,
            either side is empty, or the grouping variable is not a name.
    """
    text = term.strip()
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1]

    pipes = text.count("|")
    if pipes == 0:
        raise MalformedTermError(f"Random-effect term '{term}' has no '|' separating effects and group")
    if pipes > 1:
        raise MalformedTermError(f"Random-effect term '{term}' has more than one '|'")

    left, right = text.split("|")

    if not left.strip():
        raise MalformedTermError(f"Random-effect term '{term}' has no effects left of '|'")
    effects = _split_top_level(left, error=MalformedTermError)
    if any(not e for e in effects):
        raise MalformedTermError(f"Random-effect term '{term}' has an empty effect")
    if len(set(effects)) != len(effects):
        raise MalformedTermError(f"Random-effect term '{term}' repeats an effect")

    cluster = right.strip()
    if not cluster:
        raise MalformedTermError(f"Random-effect term '{term}' has no grouping variable right of '|'")
    if not re.fullmatch(_IDENT, cluster):
        raise MalformedTermError(f"Invalid grouping variable '{cluster}' in '{term}'")

    return RandomEffectTermSpec(cluster_id_var=cluster, effect_names=effects)


def parse_randomeffect(terms: Sequence[str]) -> List[RandomEffectTermSpec]:
    """Parse every random-effect term, preserving order."""
    return [parse_random_term(term) for term in terms]


def _cross_class_tag(spec: Any) -> Any:
    if isinstance(spec, dict):
        return spec.get("cross_class")
    return getattr(spec, "cross_class", None)


def parse_crossclass(generation_specs: Sequence[Any], parsed_terms: Sequence[RandomEffectTermSpec]) -> CrossClassificationFlags:
    """Flag cross-classified effects and flatten cluster ids per effect.

    A term is cross-classified when its generation spec carries a
    ``cross_class`` tag. Flags and cluster variables are repeated once per
    effect of the term, keeping effect order within a term and term order
    overall.

    Args:
        generation_specs: One spec per term (``GenerationSpec`` or mapping).
        parsed_terms: Output of :func:`parse_randomeffect`.

    Raises:
        InvalidGenerationSpecError: If the spec and term counts differ.
    """
    if len(generation_specs) != len(parsed_terms):
        raise InvalidGenerationSpecError(
            f"Got {len(generation_specs)} random-effect specifications for {len(parsed_terms)} random-effect terms"
        )

    flags: List[bool] = []
    flat_ids: List[str] = []
    term_index: List[int] = []

    for i, (spec, term) in enumerate(zip(generation_specs, parsed_terms)):
        tag = _cross_class_tag(spec)
        crossed = tag is not None and tag is not False
        flags.extend([crossed] * term.n_effects)
        flat_ids.extend([term.cluster_id_var] * term.n_effects)
        term_index.extend([i] * term.n_effects)

    return CrossClassificationFlags(
        is_cross_classified=flags,
        cross_class_id_vars=[cid for cid, crossed in zip(flat_ids, flags) if crossed],
        flattened_cluster_id_vars=flat_ids,
        term_index=term_index,
    )


class _CorrelationParser:
    """Parses comma-separated ``corr(a, b)=value`` assignment strings.

    Names are the effect names of one random-effect term (``1`` for the
    intercept). A module-level singleton ``_parser`` is used.
    """

    def _parse(self, input_string: str, available_items: List[str]) -> Tuple[Dict[Tuple[str, str], float], List[str]]:
        """Parse a correlation assignment string.

        Returns:
            Tuple of ``(parsed_dict, error_list)``; the dict is keyed by
            variable-name pairs in *available_items* order.
        """
        parsed_items: Dict[Tuple[str, str], float] = {}
        errors = []

        for assignment in self._split_assignments(input_string):
            try:
                (var1, var2), value = self._parse_correlation_assignment(assignment)

                valid, error = self._validate_correlation_pair((var1, var2), available_items)
                if not valid:
                    if error is not None:
                        errors.append(error)
                    continue

                parsed_value, error = self._parse_correlation_value(value)
                if error:
                    errors.append(f"corr({var1}, {var2}): {error}")
                    continue

                key = tuple(sorted((var1, var2), key=available_items.index))
                parsed_items[key] = parsed_value  # type: ignore[index]

            except ValueError as e:
                errors.append(str(e))

        return parsed_items, errors

    def _split_assignments(self, input_string: str) -> List[str]:
        """Split assignments respecting parentheses."""
        assignments = []
        current: List[str] = []
        paren_count = 0

        for char in input_string:
            if char == "," and paren_count == 0:
                if current:
                    assignments.append("".join(current).strip())
                    current = []
            else:
                if char == "(":
                    paren_count += 1
                elif char == ")":
                    paren_count -= 1
                current.append(char)

        if current and "".join(current).strip():
            assignments.append("".join(current).strip())

        return assignments

    def _parse_correlation_assignment(self, assignment: str) -> Tuple[Tuple[str, str], str]:
        """Parse correlation assignment like 'corr(1, x1)=0.5'."""
        if "=" not in assignment:
            raise ValueError(f"Invalid format: '{assignment}'. Expected 'corr(a, b)=value'")

        left, right = assignment.split("=", 1)

        pattern = r"(?:corr?)?(?:\s*\(\s*([^,]+?)\s*,\s*([^,]+?)\s*\))"
        match = re.fullmatch(pattern, left.strip())

        if not match:
            raise ValueError(f"Invalid correlation format: '{left}'. Expected 'corr(a, b)' or '(a, b)'")

        var1, var2 = match.groups()
        return (var1.strip(), var2.strip()), right.strip()

    def _validate_correlation_pair(self, pair: Tuple[str, str], available_vars: List[str]) -> Tuple[bool, Optional[str]]:
        """Validate correlation variable pair."""
        var1, var2 = pair

        if var1 not in available_vars:
            return False, f"Effect '{var1}' not found. Available: {', '.join(available_vars)}"
        if var2 not in available_vars:
            return False, f"Effect '{var2}' not found. Available: {', '.join(available_vars)}"
        if var1 == var2:
            return False, f"Cannot correlate effect with itself: '{var1}'"

        return True, None

    def _parse_correlation_value(self, value: str) -> Tuple[float, Optional[str]]:
        """Parse correlation value."""
        try:
            corr = float(value)
            if not -1 <= corr <= 1:
                return 0.0, "Correlation must be between -1 and 1"
            return corr, None
        except ValueError:
            return 0.0, f"Invalid correlation value '{value}'"


_parser = _CorrelationParser()


def _pairs_to_upper_triangle(pairs: Dict[Tuple[str, str], float], effect_names: List[str]) -> List[float]:
    """Lay out named correlations in row-major upper-triangular order; missing pairs are 0."""
    values = []
    for i in range(len(effect_names)):
        for j in range(i + 1, len(effect_names)):
            a, b = effect_names[i], effect_names[j]
            values.append(float(pairs.get((a, b), pairs.get((b, a), 0.0))))
    return values


def parse_correlations(correlations: Any, effect_names: List[str]) -> Optional[List[float]]:
    """Normalise a correlation specification to an upper-triangular list.

    Accepts ``None``, a sequence of numbers (row-major upper triangle), a
    ``{(a, b): r}`` mapping keyed by effect names, or an assignment string
    such as ``"corr(1, x1)=0.3"``.

    Raises:
        InvalidCorrelationSpecError: For unknown names, malformed strings
            or values that are not numbers.
    """
    if correlations is None:
        return None

    if isinstance(correlations, str):
        pairs, errors = _parser._parse(correlations, effect_names)
        if errors:
            raise InvalidCorrelationSpecError("Invalid correlations:\n" + "\n".join(f"• {err}" for err in errors))
        return _pairs_to_upper_triangle(pairs, effect_names)

    if isinstance(correlations, dict):
        pairs = {}
        for key, value in correlations.items():
            if not isinstance(key, tuple) or len(key) != 2:
                raise InvalidCorrelationSpecError(f"Correlation keys must be (effect, effect) pairs, got {key!r}")
            valid, error = _parser._validate_correlation_pair((str(key[0]), str(key[1])), effect_names)
            if not valid:
                raise InvalidCorrelationSpecError(error)
            pairs[(str(key[0]), str(key[1]))] = value
        correlations = _pairs_to_upper_triangle(pairs, effect_names)

    try:
        return [float(c) for c in correlations]
    except (TypeError, ValueError) as e:
        raise InvalidCorrelationSpecError(f"Correlations must be numeric: {e}") from e


def _set_path(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    keys = dotted_key.split(".")
    node = target
    for key in keys[:-1]:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    node[keys[-1]] = value


def expand_vary_arguments(sim_args: Dict[str, Any], vary_arguments: Optional[Dict[str, Sequence[Any]]] = None) -> List[Dict[str, Any]]:
    """Expand varying arguments into a full factorial list of conditions.

    Each key of *vary_arguments* names a simulation argument (dotted keys
    such as ``"sample_size.level2"`` reach into nested mappings) and maps
    to its alternative values. Every combination yields a deep copy of
    *sim_args* with those values substituted.

    Args:
        sim_args: Base simulation arguments. A ``"vary_arguments"`` entry is
            used when *vary_arguments* is not given and is dropped from the
            conditions.
        vary_arguments: ``{argument: [alternative, ...]}``.

    Returns:
        List of condition dicts, the first key varying slowest.
    """
    base = {k: v for k, v in sim_args.items() if k != "vary_arguments"}
    if vary_arguments is None:
        vary_arguments = sim_args.get("vary_arguments") or {}

    if not vary_arguments:
        return [copy.deepcopy(base)]

    keys = list(vary_arguments)
    for key in keys:
        if isinstance(vary_arguments[key], (str, bytes)) or not isinstance(vary_arguments[key], (list, tuple)):
            raise ValueError(f"vary_arguments['{key}'] must be a list of alternative values")
        if not vary_arguments[key]:
            raise ValueError(f"vary_arguments['{key}'] has no alternative values")

    conditions = []
    for combo in product(*(vary_arguments[k] for k in keys)):
        condition = copy.deepcopy(base)
        for key, value in zip(keys, combo):
            _set_path(condition, key, copy.deepcopy(value))
        conditions.append(condition)

    return conditions
