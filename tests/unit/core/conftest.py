"""Shared fixtures for core unit tests"""

import pytest

from mdpreview.core.parse import parse_markdown


SAMPLE_MD = """\
# Heading 1

A paragraph with **bold** text and `code`.

## Heading 2

- item one
- item two

```python
print("hello")
```

---

Footer paragraph.
"""

SAMPLE_FM_MD = """\
---
title: Test Doc
tags: [a, b]
---

# Title

Body content.
"""


@pytest.fixture(name="sample_md")
def sample_md_fixture():
    return SAMPLE_MD


@pytest.fixture(name="sample_fm_md")
def sample_fm_md_fixture():
    return SAMPLE_FM_MD


@pytest.fixture(name="sample_root")
def sample_root_fixture():
    root, _ = parse_markdown(SAMPLE_MD)
    return root
