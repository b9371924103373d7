import contextvars

# Global context var for Trace ID
trace_id_var = contextvars.ContextVar("trace_id", default="-")

# 当前上下文 (tab/进程) 的实例标识
instance_id_var = contextvars.ContextVar("instance_id", default="-")

# 当前初始化阶段 (InitState 的值)
init_state_var = contextvars.ContextVar("init_state", default="-")
