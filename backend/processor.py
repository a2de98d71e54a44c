import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import openai
from pydantic import BaseModel

import config
from .errors import ProcessorError
from .schemas import Artifact, NodeKind

logger = logging.getLogger(__name__)


class ProcessorResult(BaseModel):
    artifact: Artifact
    description: str = ""


class Processor(ABC):
    """
    External capability that turns resolved inputs and a prompt into one
    image. Implementations raise ProcessorError on failure.
    """

    @abstractmethod
    async def process(self, kind: NodeKind, inputs: List[Artifact], prompt: str) -> ProcessorResult:
        ...


ANALYSIS_PROMPT = """Analyze this image (image {index} of {total}) and describe:

1. Visual style: artistic style, exact color palette, lighting, composition.
2. Content: every object, subject, background, texture and the overall mood.
3. Technical: resolution, quality and format characteristics.

Answer in exactly this format:
STYLE: [style description]
CONTENT: [content description]
TECHNICAL: [technical description]"""

FALLBACK_STYLE = "STYLE: Reference image style to be preserved\nCONTENT: Visual elements from reference images\nTECHNICAL: Standard image format"
FALLBACK_CONTENT = "CONTENT: Reference images provided for content guidance"

STYLE_RE = re.compile(r"STYLE:\s*([\s\S]*?)(?=\nCONTENT:|$)", re.IGNORECASE)
CONTENT_RE = re.compile(r"CONTENT:\s*([\s\S]*?)(?=\nTECHNICAL:|$)", re.IGNORECASE)


class OpenAIImageProcessor(Processor):
    """
    Image generation and editing through an OpenAI compatible images API.

    Settings resolve as: constructor argument > environment > config.py
    (the environment is read by config.py itself).

    Edits can first describe every reference image with a vision model and
    fold those descriptions into the prompt so the edit keeps the look of
    its inputs.
    """

    def __init__(
        self,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        edit_model: Optional[str] = None,
        vision_model: Optional[str] = None,
        size: Optional[str] = None,
        analyze_references: Optional[bool] = None,
    ):
        self.api_base = api_base or config.IMAGE_API_BASE
        self.api_key = api_key if api_key is not None else config.IMAGE_API_KEY
        self.model = model or config.IMAGE_MODEL
        self.edit_model = edit_model or config.IMAGE_EDIT_MODEL
        self.vision_model = vision_model or config.VISION_MODEL
        self.size = size or config.IMAGE_SIZE
        self.analyze_references = (
            config.ANALYZE_REFERENCES if analyze_references is None else analyze_references
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def process(self, kind: NodeKind, inputs: List[Artifact], prompt: str) -> ProcessorResult:
        # The SDK client is blocking, keep it off the event loop
        if kind == NodeKind.GENERATE:
            return await asyncio.to_thread(self.generate, prompt)
        if kind == NodeKind.EDIT:
            return await asyncio.to_thread(self.edit, inputs, prompt)
        raise ProcessorError(f"No image capability for '{kind.value}' nodes")

    def generate(self, prompt: str) -> ProcessorResult:
        client = self._client()
        kwargs = {}
        if self.model.startswith("dall-e"):
            kwargs["response_format"] = "b64_json"
        logger.info(f"Generating image with {self.model} at {self.api_base}")
        try:
            response = client.images.generate(
                model=self.model, prompt=prompt, n=1, size=self.size, **kwargs
            )
        except openai.OpenAIError as e:
            raise ProcessorError(f"Image generation failed: {e}") from e

        image = self._first_image(response)
        description = getattr(image, "revised_prompt", None) or prompt
        return ProcessorResult(artifact=Artifact(mime_type="image/png", payload=image.b64_json), description=description)

    def edit(self, inputs: List[Artifact], prompt: str) -> ProcessorResult:
        references = [a for a in inputs if a.mime_type in config.SUPPORTED_MIME_TYPES]
        skipped = len(inputs) - len(references)
        if skipped:
            logger.warning(f"Skipping {skipped} reference image(s) with unsupported type")
        if not references:
            raise ProcessorError("No input image has a supported type")

        client = self._client()
        enhanced_prompt = prompt
        if self.analyze_references:
            style, content = self._analyze(client, references)
            enhanced_prompt = build_edit_prompt(prompt, len(references), style, content)

        files = []
        for i, artifact in enumerate(references):
            try:
                data = artifact.to_bytes()
            except ValueError as e:
                raise ProcessorError(f"Input image {i + 1} is unreadable: {e}") from e
            extension = artifact.mime_type.split("/")[-1]
            files.append((f"image-{i + 1}.{extension}", data, artifact.mime_type))

        logger.info(f"Editing {len(files)} image(s) with {self.edit_model} at {self.api_base}")
        try:
            response = client.images.edit(
                model=self.edit_model, image=files, prompt=enhanced_prompt, n=1, size=self.size
            )
        except openai.OpenAIError as e:
            raise ProcessorError(f"Image edit failed: {e}") from e

        image = self._first_image(response)
        return ProcessorResult(artifact=Artifact(mime_type="image/png", payload=image.b64_json), description=enhanced_prompt)

    def _client(self):
        if not self.api_key:
            raise ProcessorError("Image API key not configured")
        return openai.OpenAI(base_url=self.api_base, api_key=self.api_key, timeout=600)

    def _first_image(self, response):
        data = getattr(response, "data", None) or []
        if not data or not getattr(data[0], "b64_json", None):
            raise ProcessorError("No image data received from the image backend")
        return data[0]

    def _analyze(self, client, references: List[Artifact]) -> Tuple[str, str]:
        """Describe each reference image, returning combined (style, content) text."""
        style_parts = []
        content_parts = []
        try:
            for i, artifact in enumerate(references):
                response = client.chat.completions.create(
                    model=self.vision_model,
                    messages=[{
                        "role": "user",
                        "content": [
                            {"type": "text", "text": ANALYSIS_PROMPT.format(index=i + 1, total=len(references))},
                            {"type": "image_url", "image_url": {"url": artifact.to_data_url()}},
                        ],
                    }],
                    temperature=0.1,
                )
                analysis = response.choices[0].message.content or ""
                style = STYLE_RE.search(analysis)
                content = CONTENT_RE.search(analysis)
                if style:
                    style_parts.append(f"Image {i + 1}: {style.group(1).strip()}")
                if content:
                    content_parts.append(f"Image {i + 1}: {content.group(1).strip()}")
        except openai.OpenAIError as e:
            logger.warning(f"Reference analysis failed, using generic guidance: {e}")
            return FALLBACK_STYLE, FALLBACK_CONTENT

        if not style_parts:
            return FALLBACK_STYLE, "\n\n".join(content_parts) or FALLBACK_CONTENT
        return "\n\n".join(style_parts), "\n\n".join(content_parts) or FALLBACK_CONTENT


def build_edit_prompt(prompt: str, count: int, style: str, content: str) -> str:
    references = "You have 1 reference image to work with." if count == 1 else f"You have {count} reference images to work with."
    return f"""User Request: {prompt}

Reference Images Analysis:
{references}

Style Reference: apply these characteristics from the reference images:
{style}

Content Reference: incorporate these visual elements and composition details:
{content}

Instructions:
1. Focus on the user's request: "{prompt}"
2. Use the reference images as style and content guides
3. When merging images, combine elements naturally and keep the style consistent
4. When editing specific elements, keep the overall style and composition

Create an image that fulfills the request while keeping the color palette, lighting and artistic style of the reference images."""
