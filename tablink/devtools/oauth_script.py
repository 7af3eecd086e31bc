from __future__ import annotations

# NOTE: This function is self-contained and side-effect free until it decides to
# click. It never types into inputs: any login field means "requires-login".
# The same source runs through Runtime.evaluate (wrapped as an IIFE) and through
# Playwright's frame.evaluate (passed as a function), so keep it plain ES2019.
OAUTH_ACCEPT_FUNCTION = r"""
() => {
  const buttonTexts = ["authorize app", "allow", "authorize", "accept"];
  const host = location.hostname.toLowerCase();
  const result = {
    url: location.href,
    host,
    handled: false,
    reason: null,
    action: null,
    clickedText: null,
    hasUsernameInput: false,
    hasPasswordInput: false,
  };
  const onDomain = (domain) => host === domain || host.endsWith("." + domain);
  const isProviderHost = onDomain("twitter.com") || onDomain("x.com");
  if (!isProviderHost) {
    result.reason = "not-twitter";
    return result;
  }

  const usernameSelectors = [
    'input[name="session[username_or_email]"]',
    'input[name="text"]',
    'input[autocomplete="username"]',
    'input[data-testid="LoginForm_User_Field"]',
  ];
  const passwordSelectors = [
    'input[name="session[password]"]',
    'input[type="password"]',
    'input[data-testid="LoginForm_Password_Field"]',
  ];
  const present = (selectors) => selectors.some((selector) => document.querySelector(selector));
  result.hasUsernameInput = present(usernameSelectors);
  result.hasPasswordInput = present(passwordSelectors);
  if (result.hasUsernameInput || result.hasPasswordInput) {
    result.reason = "requires-login";
    return result;
  }

  const formSelectors = [
    'form[action*="oauth" i]',
    'form[action*="authorize" i]',
    'form[action*="oauth/authorize" i]',
  ];
  const buttonTestIds = [
    "oauthauthorizebutton",
    "oauth-allow",
    "oauth-authorize",
    "oauth-approve",
    "authorizeappbutton",
    "app-bar-allow-button",
    "allow",
    "approve",
  ];
  const isMatch = (element) => {
    if (!element) {
      return false;
    }
    const rawTestId = typeof element.getAttribute === "function" ? element.getAttribute("data-testid") : null;
    const testId = (rawTestId || "").trim().toLowerCase();
    if (testId && buttonTestIds.includes(testId)) {
      return true;
    }
    const text = (element.textContent || "").trim().toLowerCase();
    if (text.length === 0 && element.tagName === "INPUT") {
      return buttonTexts.includes((element.value || "").trim().toLowerCase());
    }
    return buttonTexts.includes(text);
  };

  const controls = Array.from(
    document.querySelectorAll('button, div[role="button"], a[role="button"], input[type="submit"]')
  );
  let target = controls.find((candidate) => isMatch(candidate)) || null;
  if (!target) {
    let fallbackForm = null;
    for (const selector of formSelectors) {
      for (const form of Array.from(document.querySelectorAll(selector))) {
        const submit = form.querySelector('button, input[type="submit"], div[role="button"], a[role="button"]');
        if (isMatch(submit)) {
          target = submit;
          break;
        }
        if (!fallbackForm) {
          fallbackForm = form;
        }
      }
      if (target) {
        break;
      }
    }
    if (!target && fallbackForm) {
      target = fallbackForm;
    }
  }
  if (!target) {
    result.reason = "button-not-found";
    return result;
  }

  const labelOf = (element) => ((element.textContent || element.value || "") + "").trim() || null;
  const finish = (action) => {
    result.handled = true;
    result.reason = null;
    result.action = action;
    result.clickedText = labelOf(target);
    return result;
  };

  if (typeof target.click === "function") {
    try {
      target.click();
      return finish("click");
    } catch (err) {
      /* fall through to a synthetic event */
    }
  }
  try {
    const view = (target.ownerDocument && target.ownerDocument.defaultView) || undefined;
    const synthetic = new MouseEvent("click", { bubbles: true, cancelable: true, view });
    if (target.dispatchEvent(synthetic)) {
      return finish("dispatch-event");
    }
  } catch (err) {
    /* fall through to form submission */
  }
  const parentForm =
    target.tagName === "FORM" ? target : typeof target.closest === "function" ? target.closest("form") : null;
  if (parentForm) {
    try {
      if (typeof parentForm.requestSubmit === "function") {
        parentForm.requestSubmit(target instanceof HTMLButtonElement ? target : undefined);
      } else {
        parentForm.submit();
      }
      return finish("form-submit");
    } catch (err) {
      /* nothing left to try */
    }
  }
  result.reason = "button-not-clickable";
  return result;
}
"""

OAUTH_ACCEPT_EXPRESSION = f"({OAUTH_ACCEPT_FUNCTION.strip()})()"
