"""
Name conversions between tables, models and relationships.

Pluralization is deliberately naive: one trailing "s" is stripped from
the last segment. Irregular plurals (people -> Person) and words ending
in "ss"/"es" are not handled; callers pass an explicit model name.
"""


def generate_model_name(table_name: str) -> str:
    """
    Suggest a model name for a table.

    Examples:
        jobs -> Job
        people_groups -> PeopleGroup
        scheduled_date_times -> ScheduledDateTime
    """
    segments = [segment for segment in (table_name or "").split("_") if segment]
    if not segments:
        return ""

    last = segments[-1]
    if len(last) > 1 and last.endswith("s"):
        segments[-1] = last[:-1]

    return "".join(segment[:1].upper() + segment[1:] for segment in segments)


def to_camel_case(name: str) -> str:
    """snake_case -> camelCase (activity_logs -> activityLogs)."""
    segments = [segment for segment in (name or "").split("_") if segment]
    if not segments:
        return ""
    head, *rest = segments
    return head[:1].lower() + head[1:] + "".join(s[:1].upper() + s[1:] for s in rest)


def to_pascal_case(name: str) -> str:
    """snake_case -> PascalCase without singularizing (activity_logs -> ActivityLogs)."""
    camel = to_camel_case(name)
    return camel[:1].upper() + camel[1:]


def target_relationship_name(polymorphic_type: str, model_name: str) -> str:
    """Name of the concrete relationship to one target (loggable + Job -> loggableJob)."""
    return f"{polymorphic_type}{model_name}"
