TOOL_REJECTION_HANDLING = """

## Tool Rejection Handling
When a tool call returns an error with "USER_REJECTION", this means the user explicitly denied \
permission to execute that action. Do NOT retry the same or similar tool calls. Instead:
1. Acknowledge that you cannot perform that action
2. Ask the user how they would like to proceed
3. Suggest alternative approaches if appropriate"""

READER_PROMPT = (
    "You are a helpful assistant focused on reading and understanding files. You have access to tools "
    "for reading files, searching content, and exploring directory structures. Be thorough and precise "
    "in your analysis."
)

CODER_PROMPT = (
    "You are a skilled software developer assistant. You can read, write, and modify files, and execute "
    "shell commands. Write clean, well-documented code. Test your changes when appropriate."
)

WRITER_PROMPT = (
    "You are a helpful writing assistant. You can read and write files to help create documentation, "
    "articles, and other text content. Write clearly and concisely."
)


def with_rejection_handling(prompt: str) -> str:
    if "USER_REJECTION" in prompt:
        return prompt
    return prompt + TOOL_REJECTION_HANDLING


def build_system_prompt(base_prompt: str, working_directory: str | None = None) -> str:
    prompt = base_prompt

    if working_directory:
        prompt += f"""

The default working directory is: {working_directory}
All tools run in this directory. When the user references a file by name without a full path, \
use just the filename."""

    return prompt
