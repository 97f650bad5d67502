DEFAULT_CONFIG = """format_version: 1
id_prefix: TK
directory: .tickets/tickets
workflow: simple-v1

policy:
  tier: integrity
"""

TICKET_TEMPLATE = """---
id: {{id}}
title: {{title}}
state: {{state}}
priority: {{priority}}
labels: []
---

## Problem

Describe the problem and context.

## Acceptance Criteria

- [ ]

## Spec

Keep small specs inline. Link longer docs if needed.

## Notes

Any extra context, links, screenshots.
"""

QA_SECTION_TEMPLATE = """
## QA

### Test Steps

### Expected Results

### Risk Notes

### Rollback Notes

### Observed Results

### Environment

### Pass/Fail Decision
"""


def render_template(template: str, values: dict[str, str]) -> str:
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return rendered
