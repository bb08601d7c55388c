import pytest

from deckhand.extractor import (
    UnresolvedHeredocError,
    extract_from_response,
    extract_units,
    is_noise,
    parse_script_blocks,
)


def test_empty_block_yields_no_units():
    assert extract_units("") == []
    assert extract_units("   \n\n   ") == []


def test_heredoc_then_command():
    units = extract_units("cat > a.ts << 'EOF'\nx=1\nEOF\nnpm test")

    assert len(units) == 2
    heredoc, command = units
    assert heredoc.is_heredoc
    assert heredoc.delimiter == "EOF"
    assert heredoc.quoted
    assert heredoc.body == ["x=1"]
    assert heredoc.body_text == "x=1\n"
    assert command.text == "npm test"
    assert not command.is_heredoc


def test_heredoc_keeps_blank_and_noise_looking_lines():
    block = "\n".join([
        "cat > notes.md << 'DECKHAND_EOF'",
        "# Title",
        "",
        "Error: this is documentation, not output",
        "-----",
        "DECKHAND_EOF",
    ])

    units = extract_units(block)

    assert len(units) == 1
    assert units[0].body == ["# Title", "", "Error: this is documentation, not output", "-----"]


def test_noise_is_dropped_outside_heredocs():
    block = "\n".join([
        "# install deps",
        "npm install",
        "total 48",
        "drwxr-xr-x  5 me staff 160 Jan 1 12:00 src",
        "BUILD SUCCESSFUL in 3s",
        "+-----+-----+",
        "2024-05-01T12:00:00Z server started",
        "[12:00:01] compiled",
        "1.2.3",
        "    at java.base/java.lang.Thread.run(Thread.java:833)",
        "Traceback (most recent call last):",
        "  File \"app.py\", line 3, in <module>",
        "npm test",
    ])

    assert [u.text for u in extract_units(block)] == ["npm install", "npm test"]


def test_unquoted_delimiter_and_dash_form():
    units = extract_units("cat <<-END\n\tbody\n\tEND\necho done")
    assert len(units) == 2
    assert units[0].delimiter == "END"
    assert units[0].terminated

    units = extract_units("python3 <<EOF\nprint(1)\nEOF")
    assert len(units) == 1
    assert units[0].delimiter == "EOF"
    assert not units[0].quoted


def test_here_string_is_not_a_heredoc():
    units = extract_units("grep foo <<< EOF\nls")
    assert [u.text for u in units] == ["grep foo <<< EOF", "ls"]


def test_multiple_heredocs_in_sequence():
    block = "cat > a.txt << 'A'\none\nA\ncat > b.txt << \"B\"\ntwo\nB"

    units = extract_units(block)

    assert [u.delimiter for u in units] == ["A", "B"]
    assert [u.body for u in units] == [["one"], ["two"]]


def test_unterminated_heredoc_is_best_effort():
    units = extract_units("cat > a.txt << 'EOF'\nline one\nline two")

    assert len(units) == 1
    assert units[0].terminated is False
    assert units[0].body == ["line one", "line two"]


def test_unterminated_heredoc_strict_raises():
    with pytest.raises(UnresolvedHeredocError) as exc:
        extract_units("cat > a.txt << 'EOF'\nline one", strict=True)
    assert exc.value.to_marked_text().startswith("[ERROR] UNRESOLVED_HEREDOC")


def test_units_reproduce_every_kept_line_in_order():
    block = "\n".join([
        "mkdir -p src",
        "cat > src/a.py << 'EOF'",
        "def f():",
        "",
        "    return 1",
        "EOF",
        "# comment",
        "python -m pytest",
    ])

    joined = "\n".join(u.text for u in extract_units(block))

    expected = [l for i, l in enumerate(block.split("\n")) if i != 6]
    assert joined.split("\n") == expected


def test_is_noise():
    assert is_noise("WARNING: deprecated")
    assert is_noise("Caused by: java.lang.NullPointerException")
    assert not is_noise("git status")
    assert not is_noise("./gradlew assembleDebug")


# ---------------------------------------------------------------------------
# Fenced blocks
# ---------------------------------------------------------------------------

def test_parse_shell_fences_and_strip_prompts():
    text = "Run this:\n```bash\n$ npm install\n> npm run build\n% ls\n```\nThen done."

    blocks = parse_script_blocks(text)

    assert len(blocks) == 1
    assert blocks[0].language == "bash"
    assert blocks[0].code == "npm install\nnpm run build\nls"


def test_non_shell_fences_are_ignored():
    text = "```python\nprint('hi')\n```\n```json\n{\"a\": 1}\n```"
    assert parse_script_blocks(text) == []


def test_untagged_fence_accepted_only_when_it_looks_like_shell():
    shell_like = "```\ngit status\nnpm test\n```"
    prose = "```\nThe build failed because:\n  something  went wrong\n```"

    assert len(parse_script_blocks(shell_like)) == 1
    assert parse_script_blocks(prose) == []


def test_fence_inside_heredoc_does_not_close_block():
    text = "\n".join([
        "```bash",
        "cat > README.md << 'EOF'",
        "```python",
        "print(1)",
        "```",
        "EOF",
        "git add README.md",
        "```",
    ])

    units = extract_from_response(text)

    assert len(units) == 2
    assert units[0].body == ["```python", "print(1)", "```"]
    assert units[1].text == "git add README.md"


def test_prompt_prefix_not_stripped_inside_heredoc_body():
    text = "```bash\ncat > q.md << 'EOF'\n> quoted line\nEOF\n```"

    units = extract_from_response(text)

    assert units[0].body == ["> quoted line"]


def test_units_from_multiple_blocks_keep_order():
    text = "```bash\ngit status\n```\nand\n```sh\nnpm test\n```"
    assert [u.text for u in extract_from_response(text)] == ["git status", "npm test"]


def test_gradle_task_lines_are_output_not_prompts():
    text = "```bash\n./gradlew assembleDebug\n> Task :app:compileDebugKotlin\n> Task :app:assembleDebug\n```"

    assert [u.text for u in extract_from_response(text)] == ["./gradlew assembleDebug"]


def test_indented_single_line_units_are_kept_verbatim():
    block = "if [ -f package.json ]; then\n  npm install\nfi"

    units = extract_units(block)

    assert [u.text for u in units] == ["if [ -f package.json ]; then", "  npm install", "fi"]
    assert "\n".join(u.text for u in units) == block
