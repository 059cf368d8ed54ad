"""
Amazon Bedrock service module.
Model client for the agent loop: converts the message log to the Anthropic
Messages format, invokes the model and turns the reply back into a Message.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, BotoCoreError

from agent.messages import Message, Role, ToolCall, assistant_message
from config import (
    aws_config,
    model_config,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
)

logger = logging.getLogger(__name__)

EMPTY_CONTENT = "(no content)"


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = model_config.max_tokens
    temperature: Optional[float] = model_config.temperature
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    throughput_mode: str = model_config.throughput_mode


def _tool_input(arguments: Any) -> Dict[str, Any]:
    """tool_use.input must be an object; keep malformed arguments visible to the model."""
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {"raw_arguments": arguments}
        if isinstance(parsed, dict):
            return parsed
    return {"raw_arguments": arguments}


def _text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text if (text or "").strip() else EMPTY_CONTENT}


def format_messages(messages: List[Message]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Convert a message view into (system_prompt, anthropic_messages).

    Tool results become `tool_result` blocks in a user turn; consecutive turns
    of the same role are merged, since the API requires strict alternation.
    """
    system_parts: List[str] = []
    formatted: List[Dict[str, Any]] = []

    def _add(role: str, blocks: List[Dict[str, Any]]) -> None:
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
        elif msg.role == Role.USER:
            _add("user", [_text_block(msg.content)])
        elif msg.role == Role.ASSISTANT:
            blocks: List[Dict[str, Any]] = []
            if msg.content.strip():
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.requested_tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": _tool_input(call.arguments),
                })
            _add("assistant", blocks or [_text_block("")])
        elif msg.role == Role.TOOL_RESULT:
            _add("user", [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": [_text_block(msg.content)],
                "is_error": msg.content.startswith("Error"),
            }])

    if formatted and formatted[0]["role"] != "user":
        formatted.insert(0, {"role": "user", "content": [_text_block("(conversation resumed)")]})

    system_prompt = "\n\n".join(p for p in system_parts if p.strip()) or None
    return system_prompt, formatted


def flatten_tool_blocks(formatted: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Render tool_use/tool_result blocks as text, for requests sent without tool definitions."""
    flattened: List[Dict[str, Any]] = []
    for turn in formatted:
        blocks: List[Dict[str, Any]] = []
        for block in turn["content"]:
            if block.get("type") == "tool_use":
                args = json.dumps(block.get("input", {}), ensure_ascii=False)
                blocks.append({"type": "text", "text": f"[called {block.get('name')} with {args}]"})
            elif block.get("type") == "tool_result":
                text = "\n".join(b.get("text", "") for b in block.get("content", []))
                blocks.append({"type": "text", "text": f"[tool result]\n{text}"})
            else:
                blocks.append(block)
        flattened.append({"role": turn["role"], "content": blocks})
    return flattened


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Implements the model client interface used by the agent loop:
    invoke(messages, tools=None) -> assistant Message.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except BotoCoreError as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"

        return get_model_config(model_id).get("base_id", model_id)

    def _format_request_body(
        self,
        messages: List[Message],
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None,
    ) -> Dict[str, Any]:
        system_prompt, formatted = format_messages(messages)
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(config.max_tokens, get_max_output_tokens(self.model_id)),
            "messages": formatted,
        }
        if system_prompt:
            body["system"] = system_prompt
        if config.temperature is not None:
            body["temperature"] = config.temperature
        elif config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if tools:
            body["tools"] = tools
        else:
            # The API rejects tool blocks in requests that define no tools
            body["messages"] = flatten_tool_blocks(formatted)
        return body

    def _parse_response(self, response_body: Dict[str, Any]) -> Message:
        """Parse the Anthropic response body into an assistant Message"""
        content_blocks = response_body.get("content")
        if not isinstance(content_blocks, list):
            raise BedrockError("Malformed model response: missing content blocks")

        text_parts: List[str] = []
        calls: List[ToolCall] = []
        for block in content_blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=block.get("input", {}),
                ))

        usage = response_body.get("usage", {})
        logger.debug(
            f"Model reply: stop_reason={response_body.get('stop_reason')}, "
            f"input_tokens={usage.get('input_tokens', 0)}, output_tokens={usage.get('output_tokens', 0)}"
        )
        return assistant_message("".join(text_parts), calls)

    def invoke(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        config: Optional[GenerationConfig] = None,
    ) -> Message:
        """
        Invoke the model on a message view.
        Returns an assistant Message carrying any requested tool calls.
        """
        gen_config = config or GenerationConfig()
        model_identifier = self._get_model_identifier(self.model_id, gen_config)
        request_body = self._format_request_body(messages, gen_config, tools=tools)

        logger.info(f"Invoking model: {model_identifier} ({len(request_body['messages'])} messages)")
        try:
            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"Bedrock API error: {error_code} - {error_message}")

            if error_code in ["ExpiredTokenException", "InvalidSignatureException"]:
                raise BedrockError("AWS credentials expired. Please refresh.")
            raise BedrockError(f"Bedrock API error: {error_message}")
        except BotoCoreError as e:
            raise BedrockError(f"Bedrock transport error: {e}")
        except ValueError as e:
            raise BedrockError(f"Malformed model response: {e}")

        return self._parse_response(response_body)

    def test_connection(self) -> Tuple[bool, str]:
        """Test the Bedrock connection"""
        try:
            self.invoke(
                [Message(role=Role.USER, content="Hi")],
                config=GenerationConfig(max_tokens=10),
            )
            return True, "Connection successful"
        except BedrockError as e:
            return False, str(e)
