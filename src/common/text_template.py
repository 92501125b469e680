from collections.abc import Mapping


def render_template(text: str, variables: Mapping[str, object] | None = None) -> str:
    """Substitute ``${name}`` placeholders; unknown placeholders are left as-is."""
    rendered = text
    for name, value in (variables or {}).items():
        rendered = rendered.replace("${" + name + "}", str(value))
    return rendered
