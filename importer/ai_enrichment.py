#!/usr/bin/env python3
"""
AI assisted product enrichment.

Two uses of chat completion APIs:
1. Unit standardisation: free-text weight/dimension strings to kg / m
2. Description generation: new title, HTML description and meta description

Enrichment never fails the import. Request and parse errors are logged and
the caller falls back to the provider data.
"""

import json
import re
from typing import Dict, Optional

from logging_config import get_logger
from importer.http_client import APIRequestError, RetryingHttpClient


CODE_FENCE_START = re.compile(r'^```[a-zA-Z]*\s*')
CODE_FENCE_END = re.compile(r'\s*```$')

# Section headers accepted by the fallback parser, mapped to result keys
SECTION_HEADERS = {
    'new_title': ('Neuer Produkttitel:', 'New product title:', 'New title:'),
    'product_description': ('Produktbeschreibung:', 'Product description:'),
    'meta_description': ('Meta-Beschreibung:', 'Meta description:', 'Meta-description:'),
}


class CompletionError(Exception):
    """Raised when a completion response has an unexpected shape."""


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fence markers around a completion."""
    text = (text or '').strip()
    text = CODE_FENCE_START.sub('', text)
    text = CODE_FENCE_END.sub('', text)
    return text.strip()


class CompletionClient:
    """Minimal chat completion client for OpenAI and Anthropic style APIs."""

    PROVIDERS = ('openai', 'anthropic')

    def __init__(self, http: RetryingHttpClient, api_key: str, model: str, base_url: str,
                 provider: str = 'openai', max_tokens: int = 150, temperature: float = 0.0):
        if provider not in self.PROVIDERS:
            raise ValueError(f"Unknown completion provider: {provider}")

        self.http = http
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip('/')
        self.provider = provider
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.logger = get_logger(f'enrichment.{provider}')

    def _request(self, prompt: str, max_tokens: int) -> Dict:
        body = {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'max_tokens': max_tokens,
            'temperature': self.temperature,
        }

        if self.provider == 'anthropic':
            headers = {
                'x-api-key': self.api_key,
                'anthropic-version': '2023-06-01',
                'Content-Type': 'application/json',
            }
            url = f"{self.base_url}/messages"
        else:
            headers = {
                'Authorization': f"Bearer {self.api_key}",
                'Content-Type': 'application/json',
            }
            url = f"{self.base_url}/chat/completions"

        return self.http.post_json(url, body, headers=headers)

    def complete(self, prompt: str, max_tokens: int = None) -> str:
        """
        Send a single user prompt and return the completion text.

        Raises:
            APIRequestError: The request failed
            CompletionError: The response carries no completion text
        """
        data = self._request(prompt, max_tokens or self.max_tokens)

        try:
            if self.provider == 'anthropic':
                text = data['content'][0]['text']
            else:
                text = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise CompletionError(f"Invalid response from {self.provider} API: {data}")

        self.logger.debug(f"{self.provider} API response: {text}")
        return text or ''


class UnitStandardizer:
    """Converts provider weight and dimension strings to Shopware units."""

    PROMPTS = {
        'weight': "`weight` in kilograms",
        'dimensions': "`length`, `width` and `height` in meters",
    }

    def __init__(self, completion: Optional[CompletionClient]):
        self.completion = completion
        self.logger = get_logger('enrichment.units')

    @property
    def enabled(self) -> bool:
        return self.completion is not None

    def build_prompt(self, value: str, kind: str) -> str:
        return (
            f"Convert the following {kind} to units compatible with Shopware 6. "
            f"Provide the result as JSON with keys {self.PROMPTS[kind]}. "
            "Only provide the JSON output without any code block markers, explanation or additional text."
            f"\n\n{value}"
        )

    def standardize(self, value: str, kind: str) -> Optional[Dict[str, float]]:
        """
        Args:
            value: Free text such as "1.2 pounds" or "10 x 5 x 2 inches"
            kind: 'weight' or 'dimensions'

        Returns:
            Numeric values keyed by unit field, or None when unavailable
        """
        if not self.enabled or not value or kind not in self.PROMPTS:
            return None

        try:
            response = self.completion.complete(self.build_prompt(value, kind))
        except (APIRequestError, CompletionError) as e:
            self.logger.error(f"Unit standardisation request failed for {kind} '{value}': {e}")
            return None

        cleaned = strip_code_fences(response)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing {kind} standardisation response: {e}\nResponse: {cleaned}")
            return None

        if not isinstance(data, dict):
            self.logger.error(f"Unexpected {kind} standardisation response: {cleaned}")
            return None

        keys = ('weight',) if kind == 'weight' else ('length', 'width', 'height')
        result = {}
        for key in keys:
            try:
                result[key] = float(data[key])
            except (KeyError, TypeError, ValueError):
                continue

        self.logger.info(f"Standardized {kind}: {result}")
        return result or None

    def weight(self, value: str) -> Optional[float]:
        result = self.standardize(value, 'weight')
        return result.get('weight') if result else None

    def dimensions(self, value: str) -> Optional[Dict[str, float]]:
        return self.standardize(value, 'dimensions')


def parse_sectioned_descriptions(completion: str) -> Dict[str, str]:
    """
    Parse a completion made of labelled sections.

    A header counts only at the start of a line, after Markdown emphasis or
    heading markers, and is matched case-insensitively. Lines following a
    header are collected into that section until the next header. Text on the
    header line after the colon is kept.
    """
    buffers = {key: [] for key in SECTION_HEADERS}
    current = None

    for line in completion.splitlines():
        stripped = line.lstrip(' *#\t')
        matched = False
        for key, headers in SECTION_HEADERS.items():
            for header in headers:
                if stripped.lower().startswith(header.lower()):
                    current = key
                    remainder = stripped[len(header):].strip(' *#\t')
                    if remainder:
                        buffers[key].append(remainder)
                    matched = True
                    break
            if matched:
                break

        if not matched and current:
            buffers[current].append(line)

    return {key: '\n'.join(lines).strip() for key, lines in buffers.items()}


def parse_generated_descriptions(completion: str) -> Dict[str, str]:
    """
    Parse a description completion.

    JSON objects with `new_title`, `product_description` and
    `meta_description` are preferred; anything else goes through the
    sectioned fallback parser.
    """
    cleaned = strip_code_fences(completion)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        return {key: str(data.get(key) or '').strip() for key in SECTION_HEADERS}

    return parse_sectioned_descriptions(cleaned)


class DescriptionGenerator:
    """Generates shop texts for a product from its title and keywords."""

    def __init__(self, completion: Optional[CompletionClient], language: str = 'German',
                 max_tokens: int = 1024):
        self.completion = completion
        self.language = language
        self.max_tokens = max_tokens
        self.logger = get_logger('enrichment.descriptions')

    @property
    def enabled(self) -> bool:
        return self.completion is not None

    def build_prompt(self, title: str, keywords: str) -> str:
        return (
            f"Write, in {self.language}, a new product title optimised for Shopware 6 "
            "(manufacturer + model and possibly the variant, nothing else), a detailed "
            "product description formatted as HTML and a meta description, based on the "
            "following title and keywords.\n\n"
            f"Title: {title}\n"
            f"Keywords: {keywords}\n\n"
            "Answer with a JSON object only, without code block markers, using the keys "
            "\"new_title\", \"product_description\" and \"meta_description\"."
        )

    def generate(self, title: str, keywords: str = '') -> Optional[Dict[str, str]]:
        """
        Returns:
            Dict with new_title, product_description and meta_description,
            or None when generation failed or produced nothing usable
        """
        if not self.enabled or not title:
            return None

        try:
            completion = self.completion.complete(self.build_prompt(title, keywords), self.max_tokens)
        except (APIRequestError, CompletionError) as e:
            self.logger.error(f"Description generation failed for '{title}': {e}")
            return None

        descriptions = parse_generated_descriptions(completion)
        if not descriptions.get('new_title') and not descriptions.get('product_description'):
            self.logger.error(f"Could not parse generated descriptions for '{title}'. Response: {completion}")
            return None

        return descriptions
