"""对话编排

每个对话请求一个 asyncio 任务，按顺序：

    1. 等待 SSE 响应头冲刷（任何上游调用之前）
    2. 并发检索记忆（带整体截止时间，失败降级为无记忆）
    3. 组装 prompt
    4. 流式调用 LLM，逐条发送 token 事件
    5. 计算用量与费用，发送 usage + done（或单个 error）
    6. 无论成败，后台写入本轮对话到记忆服务

客户端断开会取消请求任务（进而关闭上游 LLM 连接），后台写入不受影响。
"""
import asyncio
import random
import string
import time
from datetime import datetime
from typing import List, Optional, Set

from config.logging import get_logger
from config.settings import ChatConfig
from schemas.chat import ChatRequest
from services.errors import ProviderError
from services.llm_forwarder import LLMForwarder, StreamDelta, StreamFinish
from services.memory_fallback import MemoryFallbackService
from services.pricing import PricingCatalog
from services.prompt_assembler import PromptAssembler
from services.sse_emitter import SSEStreamEmitter
from services.telemetry import CHAT_COMPLETED, CHAT_ERROR, TelemetryService
from services.usage_cost import TokenUsage, UsageCostCalculator, estimate_usage

logger = get_logger(__name__)

_SESSION_SUFFIX_CHARS = string.ascii_lowercase + string.digits


def generate_session_id(now: Optional[datetime] = None) -> str:
    """session-YYYYMMDD-HHMMSS-xxxx"""
    now = now or datetime.now()
    suffix = "".join(random.choices(_SESSION_SUFFIX_CHARS, k=4))
    return f"session-{now:%Y%m%d-%H%M%S}-{suffix}"


class ChatOrchestrator:
    """Top-level coordinator, invoked once per chat request."""

    def __init__(
        self,
        llm: LLMForwarder,
        assembler: PromptAssembler,
        calculator: UsageCostCalculator,
        pricing: PricingCatalog,
        telemetry: TelemetryService,
        memory: Optional[MemoryFallbackService] = None,
        chat_config: Optional[ChatConfig] = None,
        memory_deadline_s: float = 0.7,
    ):
        self.llm = llm
        self.assembler = assembler
        self.calculator = calculator
        self.pricing = pricing
        self.telemetry = telemetry
        self.memory = memory
        self.chat_config = chat_config or ChatConfig()
        self.memory_deadline_s = memory_deadline_s
        self._requests: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()

    def start(self, request: ChatRequest, user_id: str, request_id: str) -> SSEStreamEmitter:
        """创建 SSE 流并启动请求任务；客户端断开时取消该任务"""
        emitter = SSEStreamEmitter(request_id, heartbeat_interval=self.chat_config.heartbeat_seconds)
        task = asyncio.create_task(self.run(emitter, request, user_id), name=f"chat-{request_id}")
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)
        emitter.on_disconnect(task.cancel)
        return emitter

    async def run(self, emitter: SSEStreamEmitter, request: ChatRequest, user_id: str) -> None:
        session_id = request.session_id or generate_session_id()
        model = self.llm.resolve_model(request.model)
        started = time.monotonic()
        output: List[str] = []

        logger.info(
            f"[CHAT] Request {emitter.request_id}: user={user_id} session={session_id} "
            f"model={model} use_memory={request.use_memory} len={len(request.message)}"
        )

        memory_task: Optional[asyncio.Task] = None
        if request.use_memory and self.memory is not None:
            memory_task = asyncio.create_task(
                self.memory.get_context(
                    user_id,
                    request.message,
                    session_id=session_id,
                    deadline_s=self.memory_deadline_s,
                )
            )

        try:
            if not await emitter.wait_opened(timeout=self.chat_config.stream_open_timeout_seconds):
                logger.warning(f"[CHAT] Stream {emitter.request_id} never opened, aborting")
                return

            payload = await memory_task if memory_task is not None else None
            prompt, report = self.assembler.assemble(
                self.chat_config.system_prompt, payload, request.message
            )

            llm_started = time.monotonic()
            ttft_ms: Optional[float] = None
            finish = StreamFinish()
            async for item in self.llm.stream_chat(model, prompt.messages):
                if isinstance(item, StreamDelta):
                    if ttft_ms is None:
                        ttft_ms = (time.monotonic() - llm_started) * 1000
                    output.append(item.text)
                    emitter.send_token(item.text)
                else:
                    finish = item

            output_text = "".join(output)
            if finish.usage is not None:
                usage = TokenUsage(
                    tokens_in=finish.usage.tokens_in,
                    tokens_out=finish.usage.tokens_out,
                    cached_tokens_in=finish.usage.cached_tokens_in,
                )
            else:
                usage = estimate_usage(prompt.text, output_text)

            await self.pricing.ensure_fresh()
            cost = self.calculator.calculate_usage(model, usage)

            emitter.send_usage(usage.tokens_in, usage.tokens_out, cost.storage_total(), model)
            emitter.send_done(finish.finish_reason)

            total_ms = (time.monotonic() - started) * 1000
            self.telemetry.record(
                CHAT_COMPLETED,
                user_id=user_id,
                session_id=session_id,
                request_id=emitter.request_id,
                model=model,
                tokens_in=usage.tokens_in,
                tokens_out=usage.tokens_out,
                cached_tokens_in=usage.cached_tokens_in,
                cost_usd=cost.storage_total(),
                model_found=cost.model_found,
                has_provider_usage=not usage.estimated,
                finish_reason=finish.finish_reason,
                ttft_ms=round(ttft_ms, 1) if ttft_ms is not None else None,
                total_ms=round(total_ms, 1),
                memory_used=bool(payload and payload.memories),
                prompt_plan=report.summary(),
            )
        except asyncio.CancelledError:
            logger.info(f"[CHAT] Request {emitter.request_id} cancelled after {len(output)} tokens")
            raise
        except ProviderError as e:
            self._fail(emitter, user_id, session_id, model, str(e), e.code, e.status_code, len(output))
        except Exception as e:
            logger.exception(f"[CHAT] Request {emitter.request_id} failed: {e}")
            self._fail(emitter, user_id, session_id, model, "Internal server error", "internal_error", None, len(output))
        finally:
            if memory_task is not None and not memory_task.done():
                memory_task.cancel()
            self._persist_in_background(user_id, session_id, request.message, "".join(output))

    def _fail(
        self,
        emitter: SSEStreamEmitter,
        user_id: str,
        session_id: str,
        model: str,
        message: str,
        code: str,
        status_code: Optional[int],
        tokens_sent: int,
    ) -> None:
        logger.error(f"[CHAT] Provider error on {emitter.request_id} ({code}): {message}")
        emitter.send_error(message, code)
        self.telemetry.record(
            CHAT_ERROR,
            user_id=user_id,
            session_id=session_id,
            request_id=emitter.request_id,
            model=model,
            code=code,
            status_code=status_code,
            message=message,
            tokens_sent=tokens_sent,
        )

    def _persist_in_background(self, user_id: str, session_id: str, message: str, reply: str) -> None:
        if self.memory is None:
            return
        messages = [{"role": "user", "content": message}]
        if reply:
            messages.append({"role": "assistant", "content": reply})

        # detached from the request task so a client disconnect does not abort the write
        task = asyncio.get_running_loop().create_task(
            self.memory.persist_turn(user_id, session_id, messages)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self, timeout: float = 5.0) -> None:
        """等待进行中的请求与后台写入（关闭时调用）"""
        pending = set(self._requests) | set(self._background)
        if not pending:
            return
        logger.info(f"[CHAT] Draining {len(pending)} tasks")
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
