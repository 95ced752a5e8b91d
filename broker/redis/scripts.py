"""
Redis Lua 스크립트

잡 상태를 바꾸는 연산은 모두 하나의 스크립트로 실행되어 원자적으로 처리됩니다.
잡 해시 키는 ARGV로 받은 접두사({prefix}:job:)와 잡 ID로 조합합니다.
"""

# 보관 개수 초과분 삭제 (keep < 0 이면 전부 보관)
_PRUNE_FN = """
local function prune(setKey, jobPrefix, keep)
  if keep < 0 then return end
  local excess = redis.call('ZCARD', setKey) - keep
  if excess > 0 then
    local old = redis.call('ZRANGE', setKey, 0, excess - 1)
    for _, oid in ipairs(old) do
      redis.call('DEL', jobPrefix .. oid)
    end
    redis.call('ZREMRANGEBYRANK', setKey, 0, excess - 1)
  end
end
"""

# 잡 저장 (fieldStart부터의 ARGV가 해시 필드/값 쌍)
_ADD_JOB_FN = """
local function add_job(jobKey, waitingKey, delayedKey, eventsKey, id, queue, state, dueAt, fieldStart)
  if redis.call('EXISTS', jobKey) == 1 then return 0 end
  redis.call('HSET', jobKey, unpack(ARGV, fieldStart))
  if state == 'delayed' then
    redis.call('ZADD', delayedKey, tonumber(dueAt), id)
  else
    redis.call('LPUSH', waitingKey, id)
  end
  redis.call('PUBLISH', eventsKey, cjson.encode({event='added', job_id=id, queue=queue, state=state}))
  return 1
end
"""

# KEYS: job, waiting, delayed, events
# ARGV: id, queue, state, due_at, field/value...
ADD_JOB = _ADD_JOB_FN + """
return add_job(KEYS[1], KEYS[2], KEYS[3], KEYS[4], ARGV[1], ARGV[2], ARGV[3], ARGV[4], 5)
"""

# KEYS: waiting, active, events
# ARGV: job prefix, now, queue
CLAIM = """
while true do
  local id = redis.call('RPOP', KEYS[1])
  if not id then return nil end
  local jobKey = ARGV[1] .. id
  if redis.call('EXISTS', jobKey) == 1 then
    redis.call('ZADD', KEYS[2], tonumber(ARGV[2]), id)
    redis.call('HSET', jobKey, 'state', 'active', 'processed_at', ARGV[2])
    redis.call('HDEL', jobKey, 'due_at')
    local attempts = redis.call('HINCRBY', jobKey, 'attempts_made', 1)
    redis.call('PUBLISH', KEYS[3], cjson.encode({event='active', job_id=id, queue=ARGV[3], attempts_made=attempts}))
    return redis.call('HGETALL', jobKey)
  end
end
"""

# KEYS: delayed, waiting, events
# ARGV: job prefix, now, limit, queue
PROMOTE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2], 'LIMIT', 0, tonumber(ARGV[3]))
local promoted = {}
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local jobKey = ARGV[1] .. id
  if redis.call('EXISTS', jobKey) == 1 then
    redis.call('HSET', jobKey, 'state', 'waiting')
    redis.call('HDEL', jobKey, 'due_at')
    redis.call('LPUSH', KEYS[2], id)
    redis.call('PUBLISH', KEYS[3], cjson.encode({event='waiting', job_id=id, queue=ARGV[4]}))
    table.insert(promoted, id)
  end
end
return promoted
"""

# KEYS: active, completed, events
# ARGV: job prefix, id, now, result ('' = 없음), keep, queue
COMPLETE = _PRUNE_FN + """
if redis.call('ZREM', KEYS[1], ARGV[2]) == 0 then return 0 end
local jobKey = ARGV[1] .. ARGV[2]
redis.call('HSET', jobKey, 'state', 'completed', 'finished_at', ARGV[3])
if ARGV[4] ~= '' then
  redis.call('HSET', jobKey, 'result', ARGV[4])
end
redis.call('ZADD', KEYS[2], tonumber(ARGV[3]), ARGV[2])
prune(KEYS[2], ARGV[1], tonumber(ARGV[5]))
redis.call('PUBLISH', KEYS[3], cjson.encode({event='completed', job_id=ARGV[2], queue=ARGV[6]}))
return 1
"""

# KEYS: active, delayed, events
# ARGV: job prefix, id, due_at, last_error, queue
RETRY = """
if redis.call('ZREM', KEYS[1], ARGV[2]) == 0 then return 0 end
local jobKey = ARGV[1] .. ARGV[2]
redis.call('HSET', jobKey, 'state', 'delayed', 'due_at', ARGV[3], 'last_error', ARGV[4])
redis.call('ZADD', KEYS[2], tonumber(ARGV[3]), ARGV[2])
redis.call('PUBLISH', KEYS[3], cjson.encode({event='retrying', job_id=ARGV[2], queue=ARGV[5], due_at=tonumber(ARGV[3])}))
return 1
"""

# KEYS: active, failed, events
# ARGV: job prefix, id, now, last_error, keep, queue, message
FAIL = _PRUNE_FN + """
if redis.call('ZREM', KEYS[1], ARGV[2]) == 0 then return 0 end
local jobKey = ARGV[1] .. ARGV[2]
redis.call('HSET', jobKey, 'state', 'failed', 'finished_at', ARGV[3], 'last_error', ARGV[4])
redis.call('ZADD', KEYS[2], tonumber(ARGV[3]), ARGV[2])
prune(KEYS[2], ARGV[1], tonumber(ARGV[5]))
redis.call('PUBLISH', KEYS[3], cjson.encode({event='failed', job_id=ARGV[2], queue=ARGV[6], error=ARGV[7]}))
return 1
"""

# KEYS: active, events
# ARGV: job prefix, id, progress(json), queue
UPDATE_PROGRESS = """
if not redis.call('ZSCORE', KEYS[1], ARGV[2]) then return 0 end
redis.call('HSET', ARGV[1] .. ARGV[2], 'progress', ARGV[3])
redis.call('PUBLISH', KEYS[2], cjson.encode({event='progress', job_id=ARGV[2], queue=ARGV[4], progress=cjson.decode(ARGV[3])}))
return 1
"""

# KEYS: repeat index, repeat hash, delayed
# ARGV: key, job prefix
REMOVE_REPEATABLE = """
if redis.call('EXISTS', KEYS[2]) == 0 then return 0 end
local last = redis.call('HGET', KEYS[2], 'last_job_id')
if last and redis.call('ZSCORE', KEYS[3], last) then
  local attempts = tonumber(redis.call('HGET', ARGV[2] .. last, 'attempts_made') or '0')
  if attempts == 0 then
    redis.call('ZREM', KEYS[3], last)
    redis.call('DEL', ARGV[2] .. last)
  end
end
redis.call('DEL', KEYS[2])
redis.call('ZREM', KEYS[1], ARGV[1])
return 1
"""

# KEYS: repeat index, repeat hash, job, waiting, delayed, events
# ARGV: key, fire_at, next_fire_at ('' = 등록 삭제), id, queue, state, due_at, field/value...
FIRE_REPEATABLE = _ADD_JOB_FN + """
local current = redis.call('HGET', KEYS[2], 'next_fire_at')
if (not current) or tonumber(current) ~= tonumber(ARGV[2]) then return 0 end
if ARGV[3] == '' then
  redis.call('DEL', KEYS[2])
  redis.call('ZREM', KEYS[1], ARGV[1])
else
  redis.call('HSET', KEYS[2], 'next_fire_at', ARGV[3], 'last_job_id', ARGV[4])
  redis.call('HINCRBY', KEYS[2], 'fired_count', 1)
  redis.call('ZADD', KEYS[1], tonumber(ARGV[3]), ARGV[1])
end
return add_job(KEYS[3], KEYS[4], KEYS[5], KEYS[6], ARGV[4], ARGV[5], ARGV[6], ARGV[7], 8)
"""

# 슬라이딩 윈도우 처리율 제한
# KEYS: limiter
# ARGV: now, window_ms, max, token
ACQUIRE_RATE_LIMIT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
if count >= tonumber(ARGV[3]) then
  local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
  local wait = tonumber(oldest[2]) + window - now
  if wait < 1 then wait = 1 end
  return wait
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('PEXPIRE', KEYS[1], window)
return 0
"""
