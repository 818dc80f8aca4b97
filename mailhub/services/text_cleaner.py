"""
Plain-text rendering of message bodies.

Graph returns HTML bodies for most mail; the plain-text copy stored next to
it feeds thread snippets and the thread search.
"""

import re

from bs4 import BeautifulSoup

# Tags whose content never belongs in the text body
STRIPPED_TAGS = ["script", "style", "head", "meta", "link", "title"]


def html_to_text(raw_html: str) -> str:
    """
    Convert an HTML body to plain text with normalized whitespace.

    Links keep their target as `text (href)` so it survives in snippets.
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")

    for tag in soup(STRIPPED_TAGS):
        tag.decompose()

    for a in soup.find_all("a", href=True):
        href = a.get("href", "")
        text = a.get_text(strip=True)
        if text and text != href:
            a.replace_with(f"{text} ({href})")
        else:
            a.replace_with(href)

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["p", "div", "tr", "li"]):
        block.insert_after("\n")

    text = soup.get_text()

    text = re.sub(r"[ \t\xa0]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def body_text_for(content: str, content_type: str) -> str:
    """Text body for a provider body of the given content type ("text" or "html")."""
    if not content:
        return ""
    if (content_type or "").lower() == "html":
        return html_to_text(content)
    return content


def snippet(text: str, length: int = 200) -> str:
    """First `length` characters of `text` on a single line."""
    return " ".join((text or "").split())[:length]
