#!/usr/bin/env python3
"""
Basic Python example for SkyProxy.

This example demonstrates:
- Chat completion through a model alias
- Direct provider:model references
- Streaming responses
- Error handling

Requirements:
    pip install httpx

Usage:
    skyproxy --config-dir config &
    python python_basic.py
"""
import json
import os

import httpx

# Configuration
SKYPROXY_URL = os.getenv("SKYPROXY_URL", "http://127.0.0.1:8080")


def alias_example():
    """Example: request by model alias, the alias is echoed back."""
    print("=== Alias Example ===")

    response = httpx.post(
        f"{SKYPROXY_URL}/v1/chat/completions",
        json={
            "model": "default",
            "messages": [{"role": "user", "content": "Greet the traveler in one sentence."}],
            "max_tokens": 60,
            "cache": True,  # Rewritten per provider
        },
        timeout=60.0,
    )

    if response.status_code == 200:
        data = response.json()
        print(f"Model: {data['model']}")
        print(f"Response: {data['choices'][0]['message']['content']}")
        print(f"Request ID: {response.headers.get('X-Request-ID')}")
    else:
        print(f"Error: {response.status_code} - {response.text}")


def direct_reference_example():
    """Example: bypass the slot table with provider:model."""
    print("\n=== Direct Reference Example ===")

    response = httpx.post(
        f"{SKYPROXY_URL}/v1/chat/completions",
        json={
            "model": "openrouter:meta-llama/llama-3.1-8b-instruct",
            "messages": [{"role": "user", "content": "Say hello."}],
        },
        timeout=60.0,
    )
    print(f"Status: {response.status_code}")


def streaming_example():
    """Example: streaming response, printed as deltas arrive."""
    print("\n=== Streaming Example ===")

    with httpx.stream(
        "POST",
        f"{SKYPROXY_URL}/v1/chat/completions",
        json={
            "model": "fast",
            "messages": [{"role": "user", "content": "Count to five."}],
            "stream": True,
        },
        timeout=60.0,
    ) as response:
        if response.status_code != 200:
            response.read()
            print(f"Error: {response.status_code} - {response.text}")
            return

        for line in response.iter_lines():
            if not line.startswith("data: "):
                continue
            payload = line[len("data: "):]
            if payload == "[DONE]":
                print("\n[stream complete]")
                break
            delta = json.loads(payload)["choices"][0].get("delta", {})
            print(delta.get("content", ""), end="", flush=True)


def error_handling_example():
    """Example: errors share the OpenAI error shape."""
    print("\n=== Error Handling Example ===")

    try:
        response = httpx.post(
            f"{SKYPROXY_URL}/v1/chat/completions",
            json={"model": "no-such-alias", "messages": []},
            timeout=10.0,
        )
        error = response.json().get("error", {})
        print(f"Status: {response.status_code}")
        print(f"Error Type: {error.get('type')}")
        print(f"Message: {error.get('message')}")
    except httpx.TimeoutException:
        print("Request timed out")
    except httpx.RequestError as e:
        print(f"Request error: {e}")


if __name__ == "__main__":
    print("SkyProxy Python Basic Example\n")

    alias_example()
    direct_reference_example()
    streaming_example()
    error_handling_example()

    print("\n=== Examples Completed ===")
