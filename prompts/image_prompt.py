from schemas.article import Platform

PLATFORM_STYLES = {
    Platform.MAC: (
        "macOS style interface with rounded corners, San Francisco font, light gray header with "
        "red/yellow/green traffic light buttons on the left, clean modern aesthetic"
    ),
    Platform.WINDOWS: (
        "Windows 11 style interface with rounded corners, Segoe UI font, white title bar with "
        "minimize/maximize/close buttons on the right, modern Fluent Design aesthetic"
    ),
}

IMAGE_PROMPT_TEMPLATE = """{base_prompt}

Style: {style}. Photorealistic computer interface mockup, high quality, clean and professional appearance. No text unless absolutely necessary for UI clarity."""


def build_image_prompt(base_prompt: str, platform: Platform) -> str:
    return IMAGE_PROMPT_TEMPLATE.format(
        base_prompt=base_prompt.strip(),
        style=PLATFORM_STYLES[platform],
    )
